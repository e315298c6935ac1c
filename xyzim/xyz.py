import glob
import io
import logging
import sys
import zlib
from dataclasses import dataclass
from functools import partial
from itertools import chain
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import numpy as np
from PIL import Image as PILImage

from xyzim.codex.base import (
    ShortReadError,
    SupportsRead,
    SupportsWrite,
    read_exact,
    read_uint16_le,
    read_uint32_le,
    write_uint16_le,
    write_uint32_le,
)


MAGIC_NUMBER = 0x315A5958  # "XYZ1"

PALETTE_SIZE = 256
PALETTE_BYTES = 3 * PALETTE_SIZE

CHUNK_SIZE = 0x10000


Rgb = Tuple[int, int, int]
Palette = Tuple[Rgb, ...]


class XYZError(Exception):
    pass


class InvalidHeaderError(XYZError, ValueError):
    pass


class TruncatedBodyError(XYZError, ValueError):
    pass


class TruncatedPaletteError(TruncatedBodyError):
    pass


class TruncatedBufferError(TruncatedBodyError):
    pass


class TrailingDataError(XYZError, ValueError):
    pass


class CompressionError(XYZError, OSError):
    pass


def unpack_palette(data: bytes) -> Palette:
    return tuple(
        (data[i], data[i + 1], data[i + 2]) for i in range(0, PALETTE_BYTES, 3)
    )


@dataclass
class Image:
    """An XYZ image.

    `palette` always holds exactly 256 colors. `buffer` holds one palette
    index per pixel, row by row, and should be `width * height` bytes long:
    `write` does not check it, but `read` rejects files where it is not.
    """

    width: int
    height: int
    palette: Palette
    buffer: bytes

    def __post_init__(self) -> None:
        self.palette = tuple(
            (int(r), int(g), int(b)) for r, g, b in self.palette
        )
        if len(self.palette) != PALETTE_SIZE:
            raise ValueError(
                f'palette must have {PALETTE_SIZE} colors, got {len(self.palette)}'
            )
        self.buffer = bytes(self.buffer)

    def palette_bytes(self) -> bytes:
        return bytes(chain.from_iterable(self.palette))

    def to_rgb_buffer(self) -> bytes:
        """Expand the palette indices into raw RGB bytes, 3 per pixel."""
        colors = np.frombuffer(self.palette_bytes(), dtype=np.uint8).reshape(
            PALETTE_SIZE, 3
        )
        return colors[np.frombuffer(self.buffer, dtype=np.uint8)].tobytes()

    def to_rgb_array(self) -> np.ndarray:
        return np.frombuffer(self.to_rgb_buffer(), dtype=np.uint8).reshape(
            self.height, self.width, 3
        )

    def to_pil(self) -> PILImage.Image:
        frame = np.frombuffer(self.buffer, dtype=np.uint8).reshape(
            self.height, self.width
        )
        im = PILImage.fromarray(frame)
        im.putpalette(self.palette_bytes())
        return im

    @classmethod
    def from_pil(cls, im: PILImage.Image) -> 'Image':
        if im.mode != 'P':
            raise ValueError(f'expected a palette image, got mode {im.mode}')
        width, height = im.size
        # Pillow may trim unused trailing colors
        colors = bytes(im.getpalette() or [])[:PALETTE_BYTES]
        palette = unpack_palette(colors.ljust(PALETTE_BYTES, b'\0'))
        buffer = np.asarray(im, dtype=np.uint8).tobytes()
        return cls(width, height, palette, buffer)


def decompress_body(stream: SupportsRead[bytes]) -> bytes:
    decompress = zlib.decompressobj()
    body = bytearray()
    try:
        for chunk in iter(partial(stream.read, CHUNK_SIZE), b''):
            if decompress.eof:
                raise CompressionError('extra data after compressed stream')
            body += decompress.decompress(chunk)
        body += decompress.flush()
    except zlib.error as exc:
        raise CompressionError(f'invalid compressed stream: {exc}') from exc

    if decompress.unused_data:
        raise CompressionError('extra data after compressed stream')
    if not decompress.eof:
        raise CompressionError('incomplete compressed stream')
    return bytes(body)


def read(stream: SupportsRead[bytes]) -> Image:
    """Read an XYZ image from a binary stream."""
    magic = read_uint32_le(stream)
    if magic != MAGIC_NUMBER:
        raise InvalidHeaderError(
            f'invalid XYZ header: {write_uint32_le(magic)!r}'
        )

    width = read_uint16_le(stream)
    height = read_uint16_le(stream)
    logging.debug(f'XYZ header: width={width} height={height}')

    with io.BytesIO(decompress_body(stream)) as body:
        try:
            palette = unpack_palette(read_exact(body, PALETTE_BYTES))
        except ShortReadError as exc:
            raise TruncatedPaletteError(f'truncated XYZ palette: {exc}') from exc

        try:
            buffer = read_exact(body, width * height)
        except ShortReadError as exc:
            raise TruncatedBufferError(f'truncated XYZ pixel data: {exc}') from exc

        rest = body.read()
        if rest:
            raise TrailingDataError(
                f'extra data at end of XYZ file: {len(rest)} bytes'
            )

    return Image(width, height, palette, buffer)


def write(image: Image, stream: SupportsWrite[bytes]) -> None:
    """Write an XYZ image to a binary stream.

    The pixel buffer is written as is, so an image whose buffer is not
    `width * height` bytes long produces a file that `read` refuses.
    """
    stream.write(write_uint32_le(MAGIC_NUMBER))

    stream.write(write_uint16_le(image.width))
    stream.write(write_uint16_le(image.height))

    compress = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION)
    try:
        for data in (image.palette_bytes(), image.buffer):
            stream.write(compress.compress(data))
        stream.write(compress.flush())
    except zlib.error as exc:
        raise CompressionError(f'failed to compress XYZ body: {exc}') from exc


def match_files(patterns: Iterable[str]) -> Iterator[str]:
    return iter(sorted(set(chain.from_iterable(glob.iglob(r) for r in patterns))))


def encode_bytes(image: Image) -> bytes:
    with io.BytesIO() as stream:
        write(image, stream)
        return stream.getvalue()


def verify_image(data: bytes, image: Image) -> bool:
    """Check that re-encoding `image` reproduces the file it was read from.

    Raises `XYZError` when the header or the decompressed body differ.
    Returns whether the compressed bytes are identical too.
    """
    encoded = encode_bytes(image)
    if encoded[:8] != data[:8]:
        raise XYZError('re-encoded header does not match')
    try:
        body = zlib.decompress(data[8:])
    except zlib.error as exc:
        raise CompressionError(f'invalid compressed stream: {exc}') from exc
    if zlib.decompress(encoded[8:]) != body:
        raise XYZError('re-encoded body does not match')
    return encoded == data


def decode_file(filename: str, target: Path, check: bool = False) -> Optional[Path]:
    with open(filename, 'rb') as stream:
        data = stream.read()
    with io.BytesIO(data) as stream:
        image = read(stream)
    if check and not verify_image(data, image):
        logging.warning(
            f'{filename}: compressed body differs from a default-level re-encode'
        )

    if not image.width * image.height:
        logging.warning(
            f'Skipped {filename}: {image.width}x{image.height} image has no pixels'
        )
        return None

    output = target / f'{Path(filename).stem}.png'
    image.to_pil().save(output)
    logging.info(f'Decoded {filename} ({image.width}x{image.height}) -> {output}')
    return output


def encode_file(filename: str, target: Path) -> Path:
    with PILImage.open(filename) as im:
        image = Image.from_pil(im)

    output = target / f'{Path(filename).stem}.xyz'
    with open(output, 'wb') as stream:
        write(image, stream)
    logging.info(f'Encoded {filename} ({image.width}x{image.height}) -> {output}')
    return output


def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description='convert RPG Maker XYZ images')
    parser.add_argument('files', nargs='+', help='files to convert')
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        '--decode', '-d', action='store_true', help='convert XYZ images to PNG'
    )
    mode.add_argument(
        '--encode', '-e', action='store_true', help='convert palette PNG images to XYZ'
    )
    parser.add_argument(
        '--output', '-o', default='graphics', help='directory to write results into'
    )
    parser.add_argument(
        '--check',
        '-c',
        action='store_true',
        default=False,
        help='verify decoded images re-encode to the same file contents',
    )
    parser.add_argument(
        '--verbose', '-v', action='store_true', help='show debug messages'
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    target = Path(args.output)
    target.mkdir(parents=True, exist_ok=True)

    failed = 0
    for filename in match_files(args.files):
        try:
            if args.decode:
                decode_file(filename, target, check=args.check)
            else:
                encode_file(filename, target)
        except (XYZError, OSError, EOFError, ValueError, OverflowError) as exc:
            logging.error(f'{filename}: {exc}')
            failed += 1

    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
