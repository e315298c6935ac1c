from typing import Protocol, TypeVar, Union


T_co = TypeVar('T_co', covariant=True)
T_contra = TypeVar('T_contra', contravariant=True)

BufferLike = Union[bytes, bytearray, memoryview]


class SupportsRead(Protocol[T_co]):
    def read(self, size: int = ...) -> T_co:
        ...


class SupportsWrite(Protocol[T_contra]):
    def write(self, data: T_contra) -> object:
        ...


class ShortReadError(EOFError):
    """Stream ended before the requested number of bytes could be read."""

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(f'expected {expected} bytes, got {got}')
        self.expected = expected
        self.got = got


def read_exact(stream: SupportsRead[bytes], size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ShortReadError(size, len(data))
    return data


def read_uint16_le(stream: SupportsRead[bytes]) -> int:
    return int.from_bytes(read_exact(stream, 2), byteorder='little', signed=False)


def read_uint32_le(stream: SupportsRead[bytes]) -> int:
    return int.from_bytes(read_exact(stream, 4), byteorder='little', signed=False)


def write_uint16_le(num: int) -> bytes:
    return num.to_bytes(2, byteorder='little', signed=False)


def write_uint32_le(num: int) -> bytes:
    return num.to_bytes(4, byteorder='little', signed=False)
