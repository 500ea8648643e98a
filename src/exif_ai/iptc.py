"""
Photoshop image resources (JPEG APP13) and the IPTC-IIM datasets inside resource 0x0404.

Every 8BIM resource other than IPTC-IIM is re-emitted verbatim, and inside the IIM block every
dataset other than the ones being replaced is kept in its original order.
"""

import struct
from dataclasses import dataclass

from exif_ai.errors import ParseError


PHOTOSHOP_HEADER = b"Photoshop 3.0\0"
RESOURCE_SIGNATURE = b"8BIM"
IIM_RESOURCE_ID = 0x0404
IIM_TAG_MARKER = 0x1C

RECORD_VERSION = (2, 0)
OBJECT_NAME = (2, 5)
KEYWORDS = (2, 25)
CAPTION = (2, 120)
CODED_CHARACTER_SET = (1, 90)
UTF8_ESCAPE = b"\x1b%G"
# Record-2 datasets holding binary values rather than text.
BINARY_DATASETS = {RECORD_VERSION, (2, 125), (2, 200), (2, 201), (2, 202)}

# Maximum byte lengths from the IIM specification.
MAX_OBJECT_NAME = 64
MAX_KEYWORD = 64
MAX_CAPTION = 2000


@dataclass
class Resource:
    id: int
    name: bytes
    data: bytes


@dataclass
class Dataset:
    record: int
    number: int
    data: bytes

    @property
    def key(self) -> tuple[int, int]:
        return (self.record, self.number)


def parse_resources(payload: bytes) -> list[Resource]:
    """Parse an APP13 payload (including the "Photoshop 3.0" header) into 8BIM resources."""
    if not payload.startswith(PHOTOSHOP_HEADER):
        msg = "APP13 payload is not a Photoshop resource block"
        raise ParseError(msg)
    resources: list[Resource] = []
    pos = len(PHOTOSHOP_HEADER)
    while pos + 12 <= len(payload) and payload[pos : pos + 4] == RESOURCE_SIGNATURE:
        (resource_id,) = struct.unpack_from(">H", payload, pos + 4)
        name_length = payload[pos + 6]
        # Pascal string padded so that length byte + name is even
        name_field = name_length + 1 + ((name_length + 1) & 1)
        name = payload[pos + 7 : pos + 7 + name_length]
        size_pos = pos + 6 + name_field
        if size_pos + 4 > len(payload):
            break
        (size,) = struct.unpack_from(">I", payload, size_pos)
        data_start = size_pos + 4
        data = payload[data_start : data_start + size]
        resources.append(Resource(resource_id, bytes(name), bytes(data)))
        pos = data_start + size + (size & 1)
    return resources


def build_resources(resources: list[Resource]) -> bytes:
    out = bytearray(PHOTOSHOP_HEADER)
    for resource in resources:
        out += RESOURCE_SIGNATURE + struct.pack(">H", resource.id)
        out += bytes([len(resource.name)]) + resource.name
        if (len(resource.name) + 1) & 1:
            out += b"\0"
        out += struct.pack(">I", len(resource.data)) + resource.data
        if len(resource.data) & 1:
            out += b"\0"
    return bytes(out)


def parse_datasets(data: bytes) -> list[Dataset]:
    datasets: list[Dataset] = []
    pos = 0
    while pos + 5 <= len(data) and data[pos] == IIM_TAG_MARKER:
        record, number = data[pos + 1], data[pos + 2]
        (length,) = struct.unpack_from(">H", data, pos + 3)
        pos += 5
        if length & 0x8000:
            # Extended dataset: the low bits give the size of the length field.
            length_size = length & 0x7FFF
            length = int.from_bytes(data[pos : pos + length_size], "big")
            pos += length_size
        datasets.append(Dataset(record, number, bytes(data[pos : pos + length])))
        pos += length
    return datasets


def build_datasets(datasets: list[Dataset]) -> bytes:
    out = bytearray()
    for dataset in datasets:
        out += bytes([IIM_TAG_MARKER, dataset.record, dataset.number])
        if len(dataset.data) < 0x8000:  # noqa: PLR2004
            out += struct.pack(">H", len(dataset.data))
        else:
            out += struct.pack(">HI", 0x8004, len(dataset.data))
        out += dataset.data
    return bytes(out)


def _truncate(text: str, limit: int) -> bytes:
    """
    Encode as UTF-8 and cut to `limit` bytes without splitting a character.

    Examples:
        >>> _truncate("caf\\u00e9", 4)
        b'caf'

    """
    return text.encode("utf-8")[:limit].decode("utf-8", errors="ignore").encode("utf-8")


def _text(dataset: Dataset, *, utf8: bool) -> str:
    if utf8:
        return dataset.data.decode("utf-8", errors="replace").strip()
    try:
        return dataset.data.decode("utf-8").strip()
    except UnicodeDecodeError:
        return dataset.data.decode("latin-1").strip()


def _as_utf8(dataset: Dataset) -> Dataset:
    """Re-encode a legacy (non-UTF-8) text dataset so it survives the 1:90 = ESC%G relabel."""
    if dataset.record != 2 or dataset.key in BINARY_DATASETS:  # noqa: PLR2004
        return dataset
    try:
        dataset.data.decode("utf-8")
    except UnicodeDecodeError:
        return Dataset(dataset.record, dataset.number, dataset.data.decode("latin-1").encode())
    return dataset


def read_fields(payload: bytes) -> tuple[str | None, str | None, list[str]]:
    """Return (object name, caption, keywords) from an APP13 payload."""
    iim = next((r for r in parse_resources(payload) if r.id == IIM_RESOURCE_ID), None)
    if iim is None:
        return None, None, []
    datasets = parse_datasets(iim.data)
    utf8 = any(d.key == CODED_CHARACTER_SET and d.data == UTF8_ESCAPE for d in datasets)
    title = next((_text(d, utf8=utf8) for d in datasets if d.key == OBJECT_NAME), None)
    caption = next((_text(d, utf8=utf8) for d in datasets if d.key == CAPTION), None)
    keywords = [_text(d, utf8=utf8) for d in datasets if d.key == KEYWORDS]
    return title or None, caption or None, [k for k in keywords if k]


def merge_payload(
    existing: bytes | None,
    *,
    title: str | None = None,
    description: str | None = None,
    keywords: list[str] | None = None,
) -> bytes:
    """
    Build a new APP13 payload with the given IIM fields replaced.

    Existing 8BIM resources keep their order; the IIM resource is replaced in place, or appended
    when absent. The UTF-8 coded character set (1:90) and record version (2:0) are ensured; text
    datasets from a block that did not declare UTF-8 are transcoded from Latin-1 first.
    """
    resources = parse_resources(existing) if existing else []
    iim_index = next((i for i, r in enumerate(resources) if r.id == IIM_RESOURCE_ID), None)
    datasets = parse_datasets(resources[iim_index].data) if iim_index is not None else []

    replaced = set()
    if title is not None:
        replaced.add(OBJECT_NAME)
    if description is not None:
        replaced.add(CAPTION)
    if keywords is not None:
        replaced.add(KEYWORDS)
    kept = [d for d in datasets if d.key not in replaced | {CODED_CHARACTER_SET, RECORD_VERSION}]
    version = next((d for d in datasets if d.key == RECORD_VERSION), None)
    if not any(d.key == CODED_CHARACTER_SET and d.data == UTF8_ESCAPE for d in datasets):
        kept = [_as_utf8(d) for d in kept]

    new: list[Dataset] = []
    if title is not None:
        new.append(Dataset(*OBJECT_NAME, _truncate(title, MAX_OBJECT_NAME)))
    if keywords is not None:
        new.extend(Dataset(*KEYWORDS, _truncate(k, MAX_KEYWORD)) for k in keywords)
    if description is not None:
        new.append(Dataset(*CAPTION, _truncate(description, MAX_CAPTION)))

    ordered = [
        Dataset(*CODED_CHARACTER_SET, UTF8_ESCAPE),
        *[d for d in kept if d.record < 2],  # noqa: PLR2004
        version or Dataset(*RECORD_VERSION, b"\x00\x04"),
        *[d for d in kept if d.record == 2],  # noqa: PLR2004
        *new,
        *[d for d in kept if d.record > 2],  # noqa: PLR2004
    ]
    iim = Resource(IIM_RESOURCE_ID, b"", build_datasets(ordered))
    if iim_index is None:
        resources.append(iim)
    else:
        iim.name = resources[iim_index].name
        resources[iim_index] = iim
    return build_resources(resources)
