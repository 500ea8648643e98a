"""
TIFF/EXIF IFD codec.

The parser turns a TIFF structure (an EXIF payload or a whole TIFF file) into an arena-style record:
every IFD entry is kept keyed by tag id with its type, count and raw value bytes in the structure's
own byte order, so unknown and vendor tags survive a rewrite untouched. The serializer lays the
record back out with a two-pass algorithm: first every directory and out-of-line value is sized and
assigned an offset, then the bytes are emitted with the sub-IFD pointers filled in.

Two layouts are supported:

- blob mode (EXIF inside JPEG/PNG/WebP): the whole structure is rebuilt from offset 8.
- append mode (bare TIFF files): the original bytes are kept verbatim so strip and tile offsets
  stay valid, the rebuilt directories are appended and the header's IFD0 pointer is patched.
"""

import struct
from dataclasses import dataclass, field

from loguru import logger

from exif_ai.errors import ParseError


# TIFF field types and the byte size of one value of each
BYTE = 1
ASCII = 2
SHORT = 3
LONG = 4
RATIONAL = 5
UNDEFINED = 7
IFD_TYPE = 13
TYPE_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 6: 1, 7: 1, 8: 2, 9: 4, 10: 8, 11: 4, 12: 8, 13: 4}
_STRUCT_CODES = {
    1: "B",
    3: "H",
    4: "I",
    5: "II",
    6: "b",
    7: "B",
    8: "h",
    9: "i",
    10: "ii",
    11: "f",
    12: "d",
    13: "I",
}

# IFD0
TAG_IMAGE_WIDTH = 0x0100
TAG_IMAGE_LENGTH = 0x0101
TAG_IMAGE_DESCRIPTION = 0x010E
TAG_MAKE = 0x010F
TAG_MODEL = 0x0110
TAG_ORIENTATION = 0x0112
TAG_SOFTWARE = 0x0131
TAG_DATETIME = 0x0132
TAG_XP_TITLE = 0x9C9B
TAG_XP_COMMENT = 0x9C9C
TAG_XP_KEYWORDS = 0x9C9E
TAG_XP_SUBJECT = 0x9C9F
TAG_EXIF_IFD = 0x8769
TAG_GPS_IFD = 0x8825
TAG_XMP = 0x02BC
# ExifIFD
TAG_EXPOSURE_TIME = 0x829A
TAG_F_NUMBER = 0x829D
TAG_ISO = 0x8827
TAG_DATETIME_ORIGINAL = 0x9003
TAG_FOCAL_LENGTH = 0x920A
TAG_USER_COMMENT = 0x9286
TAG_PIXEL_X = 0xA002
TAG_PIXEL_Y = 0xA003
TAG_INTEROP_IFD = 0xA005
TAG_LENS_MODEL = 0xA434
# IFD1
TAG_JPEG_IF_OFFSET = 0x0201
TAG_JPEG_IF_LENGTH = 0x0202
# GPSIFD
GPS_VERSION_ID = 0x0000
GPS_LATITUDE_REF = 0x0001
GPS_LATITUDE = 0x0002
GPS_LONGITUDE_REF = 0x0003
GPS_LONGITUDE = 0x0004

# Standard TIFF plus the RAW variants that reuse the layout (ORF "RO"/"RS", RW2 "U").
TIFF_MAGICS = {42, 0x4F52, 0x5352, 0x0055}
IFD_HEADER_SIZE = 2
IFD_ENTRY_SIZE = 12
IFD_NEXT_SIZE = 4
MAX_IFD_ENTRIES = 4096


@dataclass
class IfdEntry:
    """One directory entry. `data` holds the value bytes in the structure's byte order."""

    tag: int
    type: int
    count: int
    data: bytes = b""
    source_offset: int | None = None
    # Verbatim 4-byte value field for entries whose type is unknown or whose value is unreadable.
    raw_field: bytes | None = None

    @property
    def inline(self) -> bool:
        return self.raw_field is not None or len(self.data) <= 4


@dataclass
class Ifd:
    entries: dict[int, IfdEntry] = field(default_factory=dict)
    offset: int | None = None
    next_offset: int = 0

    def __contains__(self, tag: int) -> bool:
        return tag in self.entries

    def get(self, tag: int) -> IfdEntry | None:
        return self.entries.get(tag)

    def set(self, entry: IfdEntry) -> None:
        self.entries[entry.tag] = entry

    def size(self) -> int:
        """Directory size plus the padded size of every out-of-line value."""
        total = IFD_HEADER_SIZE + IFD_ENTRY_SIZE * len(self.entries) + IFD_NEXT_SIZE
        for entry in self.entries.values():
            if not entry.inline:
                total += _padded(len(entry.data))
        return total

    def copy(self) -> "Ifd":
        return Ifd(dict(self.entries), self.offset, self.next_offset)


@dataclass
class TiffStructure:
    byteorder: str
    magic: int = 42
    ifd0: Ifd = field(default_factory=Ifd)
    exif: Ifd | None = None
    gps: Ifd | None = None
    interop: Ifd | None = None
    ifd1: Ifd | None = None
    thumbnail: bytes | None = None
    gps_broken: bool = False
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls, byteorder: str = "<") -> "TiffStructure":
        return cls(byteorder=byteorder)

    def copy(self) -> "TiffStructure":
        """Shallow structural copy; entries themselves are treated as immutable."""
        return TiffStructure(
            byteorder=self.byteorder,
            magic=self.magic,
            ifd0=self.ifd0.copy(),
            exif=self.exif.copy() if self.exif else None,
            gps=self.gps.copy() if self.gps else None,
            interop=self.interop.copy() if self.interop else None,
            ifd1=self.ifd1.copy() if self.ifd1 else None,
            thumbnail=self.thumbnail,
            gps_broken=self.gps_broken,
            warnings=list(self.warnings),
        )


def _padded(length: int) -> int:
    return length + (length & 1)


def read_header(data: bytes) -> tuple[str, int, int]:
    """
    Parse the 8-byte TIFF header into (byteorder, magic, ifd0_offset).

    Examples:
        >>> read_header(b"II*\\x00\\x08\\x00\\x00\\x00")
        ('<', 42, 8)

    """
    if len(data) < 8:
        msg = "TIFF header truncated"
        raise ParseError(msg)
    mark = data[:2]
    if mark == b"II":
        byteorder = "<"
    elif mark == b"MM":
        byteorder = ">"
    else:
        msg = f"invalid TIFF byte order mark {mark!r}"
        raise ParseError(msg)
    magic, ifd0_offset = struct.unpack_from(byteorder + "HI", data, 2)
    if magic not in TIFF_MAGICS:
        msg = f"invalid TIFF magic {magic:#x}"
        raise ParseError(msg)
    return byteorder, magic, ifd0_offset


def looks_like_tiff(data: bytes) -> bool:
    try:
        read_header(data[:8])
    except ParseError:
        return False
    return True


def _read_ifd(data: bytes, offset: int, byteorder: str, label: str, warnings: list[str]) -> Ifd:
    if offset < 8 or offset + IFD_HEADER_SIZE > len(data):
        msg = f"{label} offset {offset} out of bounds"
        raise ParseError(msg)
    (count,) = struct.unpack_from(byteorder + "H", data, offset)
    end = offset + IFD_HEADER_SIZE + count * IFD_ENTRY_SIZE
    if count > MAX_IFD_ENTRIES or end > len(data):
        msg = f"{label} with {count} entries runs past end of data"
        raise ParseError(msg)

    ifd = Ifd(offset=offset)
    for index in range(count):
        pos = offset + IFD_HEADER_SIZE + index * IFD_ENTRY_SIZE
        tag, type_, value_count = struct.unpack_from(byteorder + "HHI", data, pos)
        value_field = data[pos + 8 : pos + 12]
        size = TYPE_SIZES.get(type_)
        if size is None:
            warnings.append(f"{label} tag {tag:#06x} has unknown type {type_}")
            ifd.set(IfdEntry(tag, type_, value_count, raw_field=value_field))
            continue
        total = size * value_count
        if total <= 4:
            ifd.set(IfdEntry(tag, type_, value_count, value_field[:total]))
            continue
        (value_offset,) = struct.unpack_from(byteorder + "I", value_field)
        if value_offset + total > len(data):
            warnings.append(f"{label} tag {tag:#06x} value out of bounds")
            ifd.set(IfdEntry(tag, type_, value_count, raw_field=value_field))
            continue
        ifd.set(
            IfdEntry(
                tag,
                type_,
                value_count,
                bytes(data[value_offset : value_offset + total]),
                source_offset=value_offset,
            ),
        )

    if end + IFD_NEXT_SIZE <= len(data):
        (ifd.next_offset,) = struct.unpack_from(byteorder + "I", data, end)
    return ifd


def _pointer(ifd: Ifd, tag: int, byteorder: str) -> int | None:
    entry = ifd.get(tag)
    if entry is None or entry.raw_field is not None or len(entry.data) < 4:
        return None
    return struct.unpack_from(byteorder + "I", entry.data)[0]


def parse_tiff(data: bytes, *, follow_ifd1: bool = True) -> TiffStructure:
    """
    Parse a TIFF structure leniently.

    An unreadable header or IFD0 raises ParseError. Unreadable sub-IFDs, IFD1 or thumbnail data
    are recorded as warnings and the structure is returned without them.

    Args:
        data: Bytes starting at the TIFF header (an EXIF payload or a whole TIFF file)
        follow_ifd1: Parse IFD1 and its thumbnail (EXIF payloads). Bare TIFF files keep IFD0's
            next pointer verbatim instead, because later pages live in the untouched original.

    """
    byteorder, magic, ifd0_offset = read_header(data)
    structure = TiffStructure(byteorder=byteorder, magic=magic)
    warnings = structure.warnings
    structure.ifd0 = _read_ifd(data, ifd0_offset, byteorder, "IFD0", warnings)

    exif_offset = _pointer(structure.ifd0, TAG_EXIF_IFD, byteorder)
    if exif_offset is not None:
        try:
            structure.exif = _read_ifd(data, exif_offset, byteorder, "ExifIFD", warnings)
        except ParseError as exc:
            warnings.append(str(exc))

    if structure.exif is not None:
        interop_offset = _pointer(structure.exif, TAG_INTEROP_IFD, byteorder)
        if interop_offset is not None:
            try:
                structure.interop = _read_ifd(
                    data, interop_offset, byteorder, "InteropIFD", warnings
                )
            except ParseError as exc:
                warnings.append(str(exc))

    if TAG_GPS_IFD in structure.ifd0:
        gps_offset = _pointer(structure.ifd0, TAG_GPS_IFD, byteorder)
        try:
            if gps_offset is None:
                msg = "GPSIFD pointer unreadable"
                raise ParseError(msg)
            structure.gps = _read_ifd(data, gps_offset, byteorder, "GPSIFD", warnings)
        except ParseError as exc:
            structure.gps_broken = True
            warnings.append(str(exc))

    next_offset = structure.ifd0.next_offset
    if follow_ifd1 and next_offset:
        try:
            structure.ifd1 = _read_ifd(data, next_offset, byteorder, "IFD1", warnings)
        except ParseError as exc:
            warnings.append(str(exc))
        else:
            _extract_thumbnail(data, structure)

    if warnings:
        logger.debug("tiff_parse_warnings", warnings=warnings)
    return structure


def _extract_thumbnail(data: bytes, structure: TiffStructure) -> None:
    ifd1 = structure.ifd1
    if ifd1 is None or TAG_JPEG_IF_OFFSET not in ifd1:
        return
    start = _pointer(ifd1, TAG_JPEG_IF_OFFSET, structure.byteorder)
    length_entry = ifd1.get(TAG_JPEG_IF_LENGTH)
    length = None
    if length_entry is not None and length_entry.raw_field is None:
        length = first_int(length_entry, structure.byteorder)
    if start is None or length is None or start + length > len(data):
        structure.warnings.append("IFD1 thumbnail out of bounds")
        ifd1.entries.pop(TAG_JPEG_IF_OFFSET, None)
        ifd1.entries.pop(TAG_JPEG_IF_LENGTH, None)
        return
    structure.thumbnail = bytes(data[start : start + length])


# --------------------------------------------------------------------------------------------------
# value decoding
# --------------------------------------------------------------------------------------------------


def unpack_values(entry: IfdEntry, byteorder: str) -> tuple:
    code = _STRUCT_CODES.get(entry.type)
    if code is None or entry.raw_field is not None:
        return ()
    try:
        return struct.unpack(f"{byteorder}{code * entry.count}", entry.data)
    except struct.error:
        return ()


def first_int(entry: IfdEntry, byteorder: str) -> int | None:
    values = unpack_values(entry, byteorder)
    if not values or entry.type not in (BYTE, SHORT, LONG, 6, 8, 9, IFD_TYPE):
        return None
    return int(values[0])


def rationals(entry: IfdEntry, byteorder: str) -> list[tuple[int, int]]:
    if entry.type not in (RATIONAL, 10):
        return []
    values = unpack_values(entry, byteorder)
    return [(values[i], values[i + 1]) for i in range(0, len(values) - 1, 2)]


def entry_text(entry: IfdEntry | None) -> str | None:
    """Decode an ASCII entry, tolerating UTF-8 and missing terminators."""
    if entry is None or entry.raw_field is not None:
        return None
    text = entry.data.split(b"\0", 1)[0].decode("utf-8", errors="replace").strip()
    return text or None


def entry_xp_text(entry: IfdEntry | None) -> str | None:
    """Decode an XP* entry (UTF-16LE regardless of the structure's byte order)."""
    if entry is None or entry.raw_field is not None or len(entry.data) < 2:
        return None
    raw = entry.data[: len(entry.data) & ~1]
    text = raw.decode("utf-16-le", errors="replace").rstrip("\0").strip()
    return text or None


def entry_user_comment(entry: IfdEntry | None, byteorder: str) -> str | None:
    """Decode UserComment: an 8-byte character-code prefix followed by the payload."""
    if entry is None or entry.raw_field is not None or len(entry.data) <= 8:
        return None
    prefix, payload = entry.data[:8], entry.data[8:]
    if prefix == b"UNICODE\0":
        if payload[:2] in (b"\xff\xfe", b"\xfe\xff"):
            text = payload.decode("utf-16", errors="replace")
        else:
            codec = "utf-16-le" if byteorder == "<" else "utf-16-be"
            text = payload[: len(payload) & ~1].decode(codec, errors="replace")
    elif prefix == b"JIS\0\0\0\0\0":
        text = payload.decode("shift_jis", errors="replace")
    else:
        text = payload.decode("utf-8", errors="replace")
    text = text.rstrip("\0").strip()
    return text or None


def format_value(entry: IfdEntry | None, byteorder: str) -> str | None:
    """Render an entry as display text (ASCII, integers, or rationals as decimals)."""
    if entry is None:
        return None
    if entry.type == ASCII:
        return entry_text(entry)
    if entry.type in (RATIONAL, 10):
        pairs = rationals(entry, byteorder)
        if not pairs or pairs[0][1] == 0:
            return None
        num, den = pairs[0]
        return f"{num / den:.2f}".rstrip("0").rstrip(".")
    value = first_int(entry, byteorder)
    return str(value) if value is not None else None


# --------------------------------------------------------------------------------------------------
# entry construction
# --------------------------------------------------------------------------------------------------


def ascii_entry(tag: int, text: str) -> IfdEntry:
    data = text.encode("utf-8") + b"\0"
    return IfdEntry(tag, ASCII, len(data), data)


def byte_entry(tag: int, data: bytes) -> IfdEntry:
    return IfdEntry(tag, BYTE, len(data), data)


def undefined_entry(tag: int, data: bytes) -> IfdEntry:
    return IfdEntry(tag, UNDEFINED, len(data), data)


def xp_entry(tag: int, text: str) -> IfdEntry:
    """
    XP* tags are BYTE arrays of NUL-terminated UTF-16LE text.

    Examples:
        >>> xp_entry(TAG_XP_TITLE, "Hi").data
        b'H\\x00i\\x00\\x00\\x00'

    """
    return byte_entry(tag, text.encode("utf-16-le") + b"\0\0")


def user_comment_entry(text: str, byteorder: str) -> IfdEntry:
    if text.isascii():
        payload = b"ASCII\0\0\0" + text.encode("ascii")
    else:
        codec = "utf-16-le" if byteorder == "<" else "utf-16-be"
        payload = b"UNICODE\0" + text.encode(codec)
    return undefined_entry(TAG_USER_COMMENT, payload)


def rational_entry(tag: int, pairs: list[tuple[int, int]], byteorder: str) -> IfdEntry:
    data = b"".join(struct.pack(byteorder + "II", num, den) for num, den in pairs)
    return IfdEntry(tag, RATIONAL, len(pairs), data)


def long_entry(tag: int, value: int, byteorder: str) -> IfdEntry:
    return IfdEntry(tag, LONG, 1, struct.pack(byteorder + "I", value))


# --------------------------------------------------------------------------------------------------
# serialization
# --------------------------------------------------------------------------------------------------


def _layout_blocks(structure: TiffStructure, *, keep_dangling: bool) -> list[tuple[str, Ifd]]:
    """Finalise each directory's entry set, including placeholder pointer entries."""
    bo = structure.byteorder
    ifd0 = structure.ifd0.copy()
    exif = structure.exif.copy() if structure.exif is not None else None
    interop = structure.interop.copy() if structure.interop is not None else None
    gps = structure.gps.copy() if structure.gps is not None else None
    ifd1 = structure.ifd1.copy() if structure.ifd1 is not None else None

    pointers = ((ifd0, TAG_EXIF_IFD, exif), (ifd0, TAG_GPS_IFD, gps))
    for parent, tag, child in pointers:
        if child is not None:
            parent.set(long_entry(tag, 0, bo))
        elif tag == TAG_GPS_IFD and structure.gps_broken:
            # Undecodable GPS stays exactly as found
            continue
        elif not keep_dangling:
            parent.entries.pop(tag, None)
    if exif is not None:
        if interop is not None:
            exif.set(long_entry(TAG_INTEROP_IFD, 0, bo))
        elif not keep_dangling:
            exif.entries.pop(TAG_INTEROP_IFD, None)
    if ifd1 is not None and structure.thumbnail is not None:
        ifd1.set(long_entry(TAG_JPEG_IF_OFFSET, 0, bo))
        ifd1.set(long_entry(TAG_JPEG_IF_LENGTH, len(structure.thumbnail), bo))

    blocks = [("ifd0", ifd0), ("exif", exif), ("interop", interop), ("gps", gps), ("ifd1", ifd1)]
    return [(name, ifd) for name, ifd in blocks if ifd is not None]


def _emit_ifd(ifd: Ifd, offset: int, next_offset: int, byteorder: str) -> bytes:
    directory = bytearray(struct.pack(byteorder + "H", len(ifd.entries)))
    values = bytearray()
    data_cursor = offset + IFD_HEADER_SIZE + IFD_ENTRY_SIZE * len(ifd.entries) + IFD_NEXT_SIZE
    for tag in sorted(ifd.entries):
        entry = ifd.entries[tag]
        directory += struct.pack(byteorder + "HHI", entry.tag, entry.type, entry.count)
        if entry.raw_field is not None:
            directory += entry.raw_field
        elif entry.inline:
            directory += entry.data.ljust(4, b"\0")
        else:
            directory += struct.pack(byteorder + "I", data_cursor + len(values))
            values += entry.data
            if len(entry.data) & 1:
                values += b"\0"
    directory += struct.pack(byteorder + "I", next_offset)
    return bytes(directory + values)


def serialize_ifds(structure: TiffStructure, start: int, *, in_place: bool = False) -> bytes:
    """
    Lay out IFD0, ExifIFD, InteropIFD, GPSIFD and IFD1 (plus thumbnail) from `start`.

    Pass one finalises every entry list and assigns each block an offset from its size; pass two
    emits the directories with sub-IFD pointers and value offsets filled in. `start` must be even.

    Args:
        structure: Parsed (and possibly edited) structure
        start: Absolute offset, relative to the TIFF header, where the first block goes
        in_place: Keep IFD0's original next pointer and any pointers whose target failed to parse,
            because the original bytes they point into are retained (append mode)

    """
    bo = structure.byteorder
    blocks = _layout_blocks(structure, keep_dangling=in_place)

    offsets: dict[str, int] = {}
    cursor = start
    for name, ifd in blocks:
        offsets[name] = cursor
        cursor += ifd.size()
    thumbnail_offset = cursor if "ifd1" in offsets and structure.thumbnail is not None else None

    by_name = dict(blocks)
    pointer_targets = (
        ("ifd0", TAG_EXIF_IFD, "exif"),
        ("ifd0", TAG_GPS_IFD, "gps"),
        ("exif", TAG_INTEROP_IFD, "interop"),
    )
    for parent, tag, child in pointer_targets:
        if parent in by_name and child in offsets:
            by_name[parent].set(long_entry(tag, offsets[child], bo))
    if thumbnail_offset is not None:
        by_name["ifd1"].set(long_entry(TAG_JPEG_IF_OFFSET, thumbnail_offset, bo))

    out = bytearray()
    for name, ifd in blocks:
        if name == "ifd0":
            next_offset = offsets.get("ifd1", structure.ifd0.next_offset if in_place else 0)
        else:
            next_offset = 0
        out += _emit_ifd(ifd, offsets[name], next_offset, bo)
    if thumbnail_offset is not None and structure.thumbnail is not None:
        out += structure.thumbnail
    return bytes(out)


def build_blob(structure: TiffStructure) -> bytes:
    """Serialise a structure as a self-contained TIFF blob (EXIF payload)."""
    bo = structure.byteorder
    header = (b"II" if bo == "<" else b"MM") + struct.pack(bo + "HI", structure.magic, 8)
    return header + serialize_ifds(structure, 8)


def append_rebuilt(original: bytes, structure: TiffStructure) -> bytes:
    """
    Append rebuilt directories to a bare TIFF file and repoint its header at the new IFD0.

    Everything in `original` is kept byte-for-byte except the 4-byte IFD0 offset in the header.
    """
    bo = structure.byteorder
    pad = len(original) & 1
    start = len(original) + pad
    tail = serialize_ifds(structure, start, in_place=True)
    return original[:4] + struct.pack(bo + "I", start) + original[8:] + b"\0" * pad + tail
