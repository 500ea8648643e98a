"""
WebP RIFF chunk list.

Chunks are kept in file order with their payloads; writing EXIF or XMP replaces the chunk in place
or appends it, and promotes a simple (VP8/VP8L) file to the extended format by adding a VP8X
header whose canvas size is read from the bitstream.
"""

import struct
from dataclasses import dataclass

from exif_ai.errors import ParseError, WriteError


RIFF = b"RIFF"
WEBP = b"WEBP"
VP8 = b"VP8 "
VP8L = b"VP8L"
VP8X = b"VP8X"
ALPH = b"ALPH"
EXIF = b"EXIF"
XMP = b"XMP "

FLAG_ANIMATION = 0x02
FLAG_XMP = 0x04
FLAG_EXIF = 0x08
FLAG_ALPHA = 0x10
FLAG_ICC = 0x20

VP8_START_CODE = b"\x9d\x01\x2a"
VP8L_SIGNATURE = 0x2F


@dataclass
class Chunk:
    fourcc: bytes
    data: bytes
    offset: int | None = None

    def encode(self) -> bytes:
        out = self.fourcc + struct.pack("<I", len(self.data)) + self.data
        if len(self.data) & 1:
            out += b"\0"
        return out


def parse_webp(data: bytes) -> list[Chunk]:
    """
    Walk the RIFF chunk list.

    Raises:
        ParseError: Not a RIFF/WEBP file, or a chunk running past the end of the data

    """
    if len(data) < 12 or data[:4] != RIFF or data[8:12] != WEBP:  # noqa: PLR2004
        msg = "missing RIFF/WEBP header"
        raise ParseError(msg)
    (riff_size,) = struct.unpack_from("<I", data, 4)
    end = min(8 + riff_size, len(data))
    chunks: list[Chunk] = []
    pos = 12
    while pos + 8 <= end:
        fourcc = bytes(data[pos : pos + 4])
        (size,) = struct.unpack_from("<I", data, pos + 4)
        if pos + 8 + size > end:
            msg = f"WebP chunk {fourcc!r} at {pos} runs past end of file"
            raise ParseError(msg)
        chunks.append(Chunk(fourcc, bytes(data[pos + 8 : pos + 8 + size]), pos))
        pos += 8 + size + (size & 1)
    if not chunks:
        msg = "WebP file has no chunks"
        raise ParseError(msg)
    return chunks


def trailer(data: bytes) -> bytes:
    """Bytes past the size recorded in the RIFF header, kept verbatim on rewrite."""
    (riff_size,) = struct.unpack_from("<I", data, 4)
    return bytes(data[8 + riff_size + (riff_size & 1) :])


def serialize_webp(chunks: list[Chunk], trailer: bytes = b"") -> bytes:
    body = WEBP + b"".join(chunk.encode() for chunk in chunks)
    return RIFF + struct.pack("<I", len(body)) + body + trailer


def find(chunks: list[Chunk], fourcc: bytes) -> int | None:
    return next((i for i, chunk in enumerate(chunks) if chunk.fourcc == fourcc), None)


def canvas_size(chunks: list[Chunk]) -> tuple[int, int, bool]:
    """
    Read (width, height, has_alpha) from the VP8 or VP8L bitstream header.

    Raises:
        WriteError: No bitstream chunk with a recognisable header

    """
    for chunk in chunks:
        data = chunk.data
        if chunk.fourcc == VP8 and len(data) >= 10 and data[3:6] == VP8_START_CODE:  # noqa: PLR2004
            width, height = struct.unpack_from("<HH", data, 6)
            has_alpha = find(chunks, ALPH) is not None
            return width & 0x3FFF, height & 0x3FFF, has_alpha
        if chunk.fourcc == VP8L and len(data) >= 5 and data[0] == VP8L_SIGNATURE:  # noqa: PLR2004
            (bits,) = struct.unpack_from("<I", data, 1)
            width = (bits & 0x3FFF) + 1
            height = ((bits >> 14) & 0x3FFF) + 1
            return width, height, bool((bits >> 28) & 1)
    msg = "cannot determine WebP canvas size from bitstream"
    raise WriteError(msg)


def build_vp8x(flags: int, width: int, height: int) -> Chunk:
    data = bytes([flags, 0, 0, 0]) + (width - 1).to_bytes(3, "little")
    data += (height - 1).to_bytes(3, "little")
    return Chunk(VP8X, data)


def set_flags(chunks: list[Chunk], *, exif: bool, xmp: bool) -> None:
    """Create or update the VP8X header so its EXIF/XMP flags match the chunk list."""
    index = find(chunks, VP8X)
    if index is None:
        width, height, has_alpha = canvas_size(chunks)
        flags = FLAG_ALPHA if has_alpha else 0
        chunks.insert(0, build_vp8x(flags, width, height))
        index = 0
    header = bytearray(chunks[index].data)
    if len(header) < 10:  # noqa: PLR2004
        msg = "VP8X chunk too short"
        raise WriteError(msg)
    header[0] = (header[0] & ~(FLAG_EXIF | FLAG_XMP)) | (FLAG_EXIF if exif else 0)
    header[0] |= FLAG_XMP if xmp else 0
    chunks[index] = Chunk(VP8X, bytes(header), chunks[index].offset)


def set_chunk(chunks: list[Chunk], fourcc: bytes, data: bytes) -> None:
    """Replace the first chunk with `fourcc` in place, or append it (EXIF before XMP)."""
    index = find(chunks, fourcc)
    if index is not None:
        chunks[index] = Chunk(fourcc, data)
        return
    if fourcc == EXIF:
        xmp_index = find(chunks, XMP)
        if xmp_index is not None:
            chunks.insert(xmp_index, Chunk(fourcc, data))
            return
    chunks.append(Chunk(fourcc, data))
