"""PNG chunk stream: chunk walk, text chunk decoding and iTXt/eXIf construction."""

import struct
import zlib
from dataclasses import dataclass

from exif_ai.errors import ParseError


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
TEXT_TYPES = (b"tEXt", b"zTXt", b"iTXt")
XMP_KEYWORD = "XML:com.adobe.xmp"
TITLE_KEYWORD = "Title"
DESCRIPTION_KEYWORD = "Description"
TRACKED_KEYWORDS = (XMP_KEYWORD, TITLE_KEYWORD, DESCRIPTION_KEYWORD)


@dataclass
class Chunk:
    type: bytes
    data: bytes
    crc: bytes
    offset: int | None = None

    @classmethod
    def build(cls, type_: bytes, data: bytes) -> "Chunk":
        crc = struct.pack(">I", zlib.crc32(type_ + data) & 0xFFFFFFFF)
        return cls(type_, data, crc)

    def encode(self) -> bytes:
        return struct.pack(">I", len(self.data)) + self.type + self.data + self.crc


def parse_png(data: bytes) -> list[Chunk]:
    """
    Split a PNG into chunks. Stored CRCs are kept as-is, not verified.

    Raises:
        ParseError: Bad signature or a chunk running past the end of the file

    """
    if not data.startswith(PNG_SIGNATURE):
        msg = "missing PNG signature"
        raise ParseError(msg)
    chunks: list[Chunk] = []
    pos = len(PNG_SIGNATURE)
    while pos < len(data):
        if pos + 8 > len(data):
            msg = f"PNG chunk header truncated at {pos}"
            raise ParseError(msg)
        length, type_ = struct.unpack_from(">I4s", data, pos)
        end = pos + 12 + length
        if end > len(data):
            msg = f"PNG chunk {type_!r} at {pos} runs past end of file"
            raise ParseError(msg)
        chunks.append(Chunk(type_, bytes(data[pos + 8 : end - 4]), bytes(data[end - 4 : end]), pos))
        pos = end
        if type_ == b"IEND":
            break
    if not chunks or chunks[0].type != b"IHDR":
        msg = "PNG does not start with IHDR"
        raise ParseError(msg)
    return chunks


def serialize_png(chunks: list[Chunk], trailer: bytes = b"") -> bytes:
    return PNG_SIGNATURE + b"".join(chunk.encode() for chunk in chunks) + trailer


def decode_text(chunk: Chunk) -> tuple[str, str] | None:
    """Return (keyword, text) for tEXt/zTXt/iTXt chunks, None for anything undecodable."""
    if chunk.type not in TEXT_TYPES or b"\0" not in chunk.data:
        return None
    raw_keyword, rest = chunk.data.split(b"\0", 1)
    keyword = raw_keyword.decode("latin-1")
    try:
        if chunk.type == b"tEXt":
            return keyword, rest.decode("latin-1")
        if chunk.type == b"zTXt":
            return keyword, zlib.decompress(rest[1:]).decode("latin-1")
        compressed, _method = rest[0], rest[1]
        _language, _translated, text = rest[2:].split(b"\0", 2)
        if compressed:
            text = zlib.decompress(text)
        return keyword, text.decode("utf-8")
    except (IndexError, ValueError, zlib.error):
        return None


def text_keyword(chunk: Chunk) -> str | None:
    if chunk.type not in TEXT_TYPES or b"\0" not in chunk.data:
        return None
    return chunk.data.split(b"\0", 1)[0].decode("latin-1")


def make_itxt(keyword: str, text: str | bytes) -> Chunk:
    """Build an uncompressed iTXt chunk with empty language and translated keyword."""
    payload = text if isinstance(text, bytes) else text.encode("utf-8")
    data = keyword.encode("latin-1") + b"\0" + b"\0\0" + b"\0" + b"\0" + payload
    return Chunk.build(b"iTXt", data)


def first_index(chunks: list[Chunk], type_: bytes) -> int | None:
    return next((i for i, chunk in enumerate(chunks) if chunk.type == type_), None)


def trailer(data: bytes, chunks: list[Chunk]) -> bytes:
    """Bytes after the last parsed chunk (data appended after IEND), kept verbatim on rewrite."""
    last = chunks[-1]
    if last.offset is None:
        return b""
    return bytes(data[last.offset + 12 + len(last.data) :])
