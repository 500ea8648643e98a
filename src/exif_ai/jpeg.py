"""JPEG marker-segment walker: segments up to SOS are parsed, everything from SOS on is opaque."""

import struct
from collections.abc import Callable
from dataclasses import dataclass, field

from exif_ai.errors import ParseError, WriteError


SOI = b"\xff\xd8"
APP0 = 0xE0
APP1 = 0xE1
APP13 = 0xED
SOS = 0xDA
EOI = 0xD9
# Markers without a length field
STANDALONE_MARKERS = {0x01, *range(0xD0, 0xD8)}

EXIF_PREFIX = b"Exif\0\0"
XMP_PREFIX = b"http://ns.adobe.com/xap/1.0/\0"
EXTENDED_XMP_PREFIX = b"http://ns.adobe.com/xmp/extension/\0"
PHOTOSHOP_PREFIX = b"Photoshop 3.0\0"
MAX_SEGMENT_PAYLOAD = 0xFFFF - 2


@dataclass
class Segment:
    marker: int
    payload: bytes = b""
    offset: int | None = None

    def is_app(self, marker: int, prefix: bytes) -> bool:
        return self.marker == marker and self.payload.startswith(prefix)

    @property
    def is_exif(self) -> bool:
        return self.is_app(APP1, EXIF_PREFIX)

    @property
    def is_xmp(self) -> bool:
        return self.is_app(APP1, XMP_PREFIX)

    @property
    def is_extended_xmp(self) -> bool:
        return self.is_app(APP1, EXTENDED_XMP_PREFIX)

    @property
    def is_photoshop(self) -> bool:
        return self.is_app(APP13, PHOTOSHOP_PREFIX)

    def encode(self) -> bytes:
        if self.marker in STANDALONE_MARKERS:
            return bytes([0xFF, self.marker])
        if len(self.payload) > MAX_SEGMENT_PAYLOAD:
            msg = (
                f"segment {self.marker:#04x} payload of {len(self.payload)} bytes exceeds "
                f"{MAX_SEGMENT_PAYLOAD}"
            )
            raise WriteError(msg)
        return bytes([0xFF, self.marker]) + struct.pack(">H", len(self.payload) + 2) + self.payload


@dataclass
class JpegFile:
    segments: list[Segment] = field(default_factory=list)
    # SOS marker, scan data and everything after it, copied verbatim
    tail: bytes = b""

    def find(self, predicate: Callable[[Segment], bool]) -> int | None:
        return next((i for i, seg in enumerate(self.segments) if predicate(seg)), None)

    def to_bytes(self) -> bytes:
        return SOI + b"".join(seg.encode() for seg in self.segments) + self.tail


def parse_jpeg(data: bytes) -> JpegFile:
    """
    Walk marker segments from SOI up to SOS (or EOI).

    Raises:
        ParseError: Missing SOI, a marker where none is expected, or a truncated segment

    """
    if not data.startswith(SOI):
        msg = "missing JPEG SOI marker"
        raise ParseError(msg)
    jpeg = JpegFile()
    pos = 2
    while True:
        if pos >= len(data):
            msg = "JPEG ended before SOS"
            raise ParseError(msg)
        if data[pos] != 0xFF:  # noqa: PLR2004
            msg = f"expected JPEG marker at offset {pos}"
            raise ParseError(msg)
        # Skip fill bytes
        while pos + 1 < len(data) and data[pos + 1] == 0xFF:  # noqa: PLR2004
            pos += 1
        if pos + 1 >= len(data):
            msg = "JPEG truncated inside marker"
            raise ParseError(msg)
        marker = data[pos + 1]
        if marker in (SOS, EOI):
            jpeg.tail = bytes(data[pos:])
            return jpeg
        if marker in STANDALONE_MARKERS:
            jpeg.segments.append(Segment(marker, offset=pos))
            pos += 2
            continue
        if pos + 4 > len(data):
            msg = f"JPEG segment {marker:#04x} truncated"
            raise ParseError(msg)
        (length,) = struct.unpack_from(">H", data, pos + 2)
        end = pos + 2 + length
        if length < 2 or end > len(data):  # noqa: PLR2004
            msg = f"JPEG segment {marker:#04x} at {pos} runs past end of file"
            raise ParseError(msg)
        jpeg.segments.append(Segment(marker, bytes(data[pos + 4 : end]), offset=pos))
        pos = end


def _insert_index(jpeg: JpegFile, after: tuple[Callable[[Segment], bool], ...]) -> int:
    """Position just past the last segment matching any predicate, else right after SOI."""
    index = 0
    for i, seg in enumerate(jpeg.segments):
        if any(predicate(seg) for predicate in after):
            index = i + 1
    return index


def _is_app0(seg: Segment) -> bool:
    return seg.marker == APP0


def set_exif(jpeg: JpegFile, tiff_blob: bytes) -> None:
    payload = EXIF_PREFIX + tiff_blob
    index = jpeg.find(lambda s: s.is_exif)
    if index is not None:
        jpeg.segments[index] = Segment(APP1, payload)
    else:
        jpeg.segments.insert(_insert_index(jpeg, (_is_app0,)), Segment(APP1, payload))


def set_xmp(jpeg: JpegFile, packet: bytes) -> None:
    payload = XMP_PREFIX + packet
    index = jpeg.find(lambda s: s.is_xmp)
    if index is not None:
        jpeg.segments[index] = Segment(APP1, payload)
    else:
        position = _insert_index(jpeg, (_is_app0, lambda s: s.is_exif))
        jpeg.segments.insert(position, Segment(APP1, payload))


def set_photoshop(jpeg: JpegFile, payload: bytes) -> None:
    index = jpeg.find(lambda s: s.is_photoshop)
    if index is not None:
        jpeg.segments[index] = Segment(APP13, payload)
    else:
        position = _insert_index(
            jpeg, (_is_app0, lambda s: s.is_exif, lambda s: s.is_xmp, lambda s: s.is_extended_xmp)
        )
        jpeg.segments.insert(position, Segment(APP13, payload))


def strip_metadata(jpeg: JpegFile) -> list[str]:
    """Drop EXIF, XMP (main and extended) and Photoshop/IPTC segments; return what was removed."""
    removed: list[str] = []
    kept: list[Segment] = []
    for seg in jpeg.segments:
        if seg.is_exif:
            removed.append("exif")
        elif seg.is_xmp or seg.is_extended_xmp:
            removed.append("xmp")
        elif seg.is_photoshop:
            removed.append("iptc")
        else:
            kept.append(seg)
    jpeg.segments = kept
    return removed
