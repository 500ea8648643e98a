"""
Container reading: parse a file into a snapshot holding its structure and an ExistingMetadata view.

The snapshot is what the writer edits, so nothing is re-read between planning and writing. Reading
never writes to the file.
"""

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from exif_ai import iptc, jpeg, png, tiff, webp, xmp
from exif_ai.detect import detect_kind
from exif_ai.errors import ParseError
from exif_ai.gps import from_dms
from exif_ai.models import ContainerFamily, ContainerKind, Coordinate, ExistingMetadata


# Bytes of a sidecar-only file scanned for an embedded EXIF payload
SIDECAR_SCAN_LIMIT = 4 * 1024 * 1024


@dataclass
class ContainerSnapshot:
    """Everything the writer needs: original bytes plus the parsed structures."""

    path: Path
    kind: ContainerKind
    metadata: ExistingMetadata
    data: bytes = b""
    structure: tiff.TiffStructure | None = None
    # An EXIF payload exists but could not be parsed; it must not be rewritten.
    exif_broken: bool = False
    jpeg_file: jpeg.JpegFile | None = None
    png_chunks: list[png.Chunk] = field(default_factory=list)
    webp_chunks: list[webp.Chunk] = field(default_factory=list)
    xmp_packet: bytes | None = None
    iptc_payload: bytes | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def sidecar_path(self) -> Path:
        return xmp.sidecar_path_for(self.path)


@dataclass
class _Fields:
    """Mutable accumulator; earlier sources win, later ones only fill gaps."""

    values: dict = field(default_factory=dict)
    locations: dict[str, tuple[int, int]] = field(default_factory=dict)

    def fill(self, name: str, value: object) -> None:
        if value in (None, "", []):
            return
        if self.values.get(name) in (None, "", []):
            self.values[name] = value

    def build(self) -> ExistingMetadata:
        return ExistingMetadata(**self.values, locations=self.locations)


def _split_keywords(text: str | None) -> list[str]:
    if not text:
        return []
    return [part.strip() for part in text.replace(",", ";").split(";") if part.strip()]


def _decode_gps(structure: tiff.TiffStructure) -> tuple[Coordinate | None, bool]:
    """Return (coordinate, undecodable). Lat/lon tags that cannot be decoded count as present."""
    if structure.gps_broken:
        return None, True
    gps_ifd = structure.gps
    if gps_ifd is None:
        return None, False
    lat_entry = gps_ifd.get(tiff.GPS_LATITUDE)
    lon_entry = gps_ifd.get(tiff.GPS_LONGITUDE)
    if lat_entry is None and lon_entry is None:
        return None, False
    bo = structure.byteorder
    lat = lon = None
    if lat_entry is not None and lon_entry is not None:
        lat_ref = tiff.entry_text(gps_ifd.get(tiff.GPS_LATITUDE_REF))
        lon_ref = tiff.entry_text(gps_ifd.get(tiff.GPS_LONGITUDE_REF))
        lat = from_dms(tiff.rationals(lat_entry, bo), lat_ref)
        lon = from_dms(tiff.rationals(lon_entry, bo), lon_ref)
    if lat is None or lon is None:
        return None, True
    return Coordinate(latitude=lat, longitude=lon), False


def _record_locations(structure: tiff.TiffStructure, base: int, fields: _Fields) -> None:
    ifds = (("ifd0", structure.ifd0), ("exif", structure.exif), ("gps", structure.gps))
    for name, ifd in ifds:
        if ifd is None or ifd.offset is None:
            continue
        fields.locations[f"tiff.{name}"] = (base + ifd.offset, ifd.size())
        for entry in ifd.entries.values():
            if entry.source_offset is not None:
                fields.locations[f"tiff.{name}.{entry.tag:#06x}"] = (
                    base + entry.source_offset,
                    len(entry.data),
                )


def _fill_from_tiff(structure: tiff.TiffStructure, fields: _Fields) -> None:
    bo = structure.byteorder
    ifd0 = structure.ifd0
    exif_ifd = structure.exif or tiff.Ifd()

    fields.fill("make", tiff.entry_text(ifd0.get(tiff.TAG_MAKE)))
    fields.fill("model", tiff.entry_text(ifd0.get(tiff.TAG_MODEL)))
    fields.fill(
        "title",
        tiff.entry_xp_text(ifd0.get(tiff.TAG_XP_TITLE))
        or tiff.entry_text(ifd0.get(tiff.TAG_IMAGE_DESCRIPTION)),
    )
    fields.fill(
        "description",
        tiff.entry_user_comment(exif_ifd.get(tiff.TAG_USER_COMMENT), bo)
        or tiff.entry_xp_text(ifd0.get(tiff.TAG_XP_COMMENT)),
    )
    fields.fill("keywords", _split_keywords(tiff.entry_xp_text(ifd0.get(tiff.TAG_XP_KEYWORDS))))
    fields.fill("subject", tiff.entry_xp_text(ifd0.get(tiff.TAG_XP_SUBJECT)))

    coordinate, undecodable = _decode_gps(structure)
    fields.fill("gps", coordinate)
    if undecodable:
        fields.values["gps_present"] = True

    fields.fill(
        "date_time",
        tiff.entry_text(exif_ifd.get(tiff.TAG_DATETIME_ORIGINAL))
        or tiff.entry_text(ifd0.get(tiff.TAG_DATETIME)),
    )
    fields.fill("software", tiff.entry_text(ifd0.get(tiff.TAG_SOFTWARE)))
    fields.fill("orientation", tiff.format_value(ifd0.get(tiff.TAG_ORIENTATION), bo))
    fields.fill("lens_model", tiff.entry_text(exif_ifd.get(tiff.TAG_LENS_MODEL)))
    fields.fill("exposure_time", _exposure(exif_ifd.get(tiff.TAG_EXPOSURE_TIME), bo))
    fields.fill("f_number", tiff.format_value(exif_ifd.get(tiff.TAG_F_NUMBER), bo))
    fields.fill("iso", tiff.format_value(exif_ifd.get(tiff.TAG_ISO), bo))
    fields.fill("focal_length", tiff.format_value(exif_ifd.get(tiff.TAG_FOCAL_LENGTH), bo))
    fields.fill(
        "image_width",
        tiff.format_value(exif_ifd.get(tiff.TAG_PIXEL_X), bo)
        or tiff.format_value(ifd0.get(tiff.TAG_IMAGE_WIDTH), bo),
    )
    fields.fill(
        "image_height",
        tiff.format_value(exif_ifd.get(tiff.TAG_PIXEL_Y), bo)
        or tiff.format_value(ifd0.get(tiff.TAG_IMAGE_LENGTH), bo),
    )


def _exposure(entry: tiff.IfdEntry | None, byteorder: str) -> str | None:
    """Render exposure time as a fraction ("1/250") when below one second."""
    if entry is None:
        return None
    pairs = tiff.rationals(entry, byteorder)
    if not pairs or pairs[0][0] == 0 or pairs[0][1] == 0:
        return tiff.format_value(entry, byteorder)
    num, den = pairs[0]
    if num < den:
        return f"1/{round(den / num)}"
    return tiff.format_value(entry, byteorder)


def _fill_from_xmp(packet: bytes, fields: _Fields, warnings: list[str]) -> None:
    try:
        parsed = xmp.parse_packet(packet)
    except ParseError as exc:
        warnings.append(str(exc))
        return
    fields.fill("title", parsed.title)
    fields.fill("description", parsed.description)
    fields.fill("keywords", parsed.keywords)
    fields.fill("gps", parsed.gps)
    if parsed.gps_present:
        fields.values["gps_present"] = True


def _fill_from_iptc(payload: bytes, fields: _Fields, warnings: list[str]) -> None:
    try:
        title, caption, keywords = iptc.read_fields(payload)
    except ParseError as exc:
        warnings.append(str(exc))
        return
    fields.fill("title", title)
    fields.fill("description", caption)
    fields.fill("keywords", keywords)


def _parse_exif(
    payload: bytes, snapshot: ContainerSnapshot, fields: _Fields, base: int, *, follow_ifd1: bool
) -> None:
    try:
        structure = tiff.parse_tiff(payload, follow_ifd1=follow_ifd1)
    except ParseError as exc:
        logger.warning("exif_unreadable", error=str(exc))
        snapshot.exif_broken = True
        snapshot.warnings.append(str(exc))
        # Unknown GPS state: never add coordinates to an EXIF we cannot read.
        fields.values["gps_present"] = True
        return
    snapshot.structure = structure
    snapshot.warnings.extend(structure.warnings)
    if structure.warnings:
        logger.warning("exif_partially_decoded", warnings=structure.warnings)
    _record_locations(structure, base, fields)
    _fill_from_tiff(structure, fields)


def _read_jpeg(snapshot: ContainerSnapshot, fields: _Fields) -> None:
    parsed = jpeg.parse_jpeg(snapshot.data)
    snapshot.jpeg_file = parsed
    exif_seg = xmp_seg = iptc_seg = None
    for seg in parsed.segments:
        if seg.is_exif and exif_seg is None:
            exif_seg = seg
        elif seg.is_xmp and xmp_seg is None:
            xmp_seg = seg
        elif seg.is_photoshop and iptc_seg is None:
            iptc_seg = seg

    if exif_seg is not None and exif_seg.offset is not None:
        fields.locations["jpeg.exif"] = (exif_seg.offset, len(exif_seg.payload) + 4)
        base = exif_seg.offset + 4 + len(jpeg.EXIF_PREFIX)
        payload = exif_seg.payload[len(jpeg.EXIF_PREFIX) :]
        _parse_exif(payload, snapshot, fields, base, follow_ifd1=True)
    if xmp_seg is not None and xmp_seg.offset is not None:
        fields.locations["jpeg.xmp"] = (xmp_seg.offset, len(xmp_seg.payload) + 4)
        snapshot.xmp_packet = xmp_seg.payload[len(jpeg.XMP_PREFIX) :]
        _fill_from_xmp(snapshot.xmp_packet, fields, snapshot.warnings)
    if iptc_seg is not None and iptc_seg.offset is not None:
        fields.locations["jpeg.iptc"] = (iptc_seg.offset, len(iptc_seg.payload) + 4)
        snapshot.iptc_payload = iptc_seg.payload
        _fill_from_iptc(iptc_seg.payload, fields, snapshot.warnings)


def _read_tiff(snapshot: ContainerSnapshot, fields: _Fields) -> None:
    # The header and IFD0 must be readable for a bare TIFF; ParseError propagates.
    structure = tiff.parse_tiff(snapshot.data, follow_ifd1=False)
    snapshot.structure = structure
    snapshot.warnings.extend(structure.warnings)
    if structure.warnings:
        logger.warning("exif_partially_decoded", warnings=structure.warnings)
    _record_locations(structure, 0, fields)
    _fill_from_tiff(structure, fields)
    packet = structure.ifd0.get(tiff.TAG_XMP)
    if packet is not None and packet.raw_field is None:
        snapshot.xmp_packet = packet.data
        _fill_from_xmp(packet.data, fields, snapshot.warnings)


def _read_png(snapshot: ContainerSnapshot, fields: _Fields) -> None:
    chunks = png.parse_png(snapshot.data)
    snapshot.png_chunks = chunks
    texts: dict[str, str] = {}
    for chunk in chunks:
        if chunk.type == b"eXIf" and snapshot.structure is None and not snapshot.exif_broken:
            if chunk.offset is not None:
                fields.locations["png.eXIf"] = (chunk.offset, len(chunk.data) + 12)
            payload = chunk.data
            if payload.startswith(jpeg.EXIF_PREFIX):
                payload = payload[len(jpeg.EXIF_PREFIX) :]
            _parse_exif(payload, snapshot, fields, (chunk.offset or 0) + 8, follow_ifd1=True)
            continue
        decoded = png.decode_text(chunk)
        if decoded is None or decoded[0] not in png.TRACKED_KEYWORDS:
            continue
        keyword, text = decoded
        texts.setdefault(keyword, text)
        if chunk.offset is not None:
            fields.locations.setdefault(f"png.{keyword}", (chunk.offset, len(chunk.data) + 12))

    fields.fill("title", texts.get(png.TITLE_KEYWORD, "").strip())
    fields.fill("description", texts.get(png.DESCRIPTION_KEYWORD, "").strip())
    if png.XMP_KEYWORD in texts:
        snapshot.xmp_packet = texts[png.XMP_KEYWORD].encode("utf-8")
        _fill_from_xmp(snapshot.xmp_packet, fields, snapshot.warnings)


def _read_webp(snapshot: ContainerSnapshot, fields: _Fields) -> None:
    chunks = webp.parse_webp(snapshot.data)
    snapshot.webp_chunks = chunks
    for chunk in chunks:
        if chunk.offset is not None:
            name = chunk.fourcc.decode("latin-1").strip()
            fields.locations.setdefault(f"webp.{name}", (chunk.offset, len(chunk.data) + 8))
    exif_index = webp.find(chunks, webp.EXIF)
    if exif_index is not None:
        chunk = chunks[exif_index]
        payload = chunk.data
        base = (chunk.offset or 0) + 8
        if payload.startswith(jpeg.EXIF_PREFIX):
            payload = payload[len(jpeg.EXIF_PREFIX) :]
            base += len(jpeg.EXIF_PREFIX)
        _parse_exif(payload, snapshot, fields, base, follow_ifd1=True)
    xmp_index = webp.find(chunks, webp.XMP)
    if xmp_index is not None:
        snapshot.xmp_packet = chunks[xmp_index].data
        _fill_from_xmp(snapshot.xmp_packet, fields, snapshot.warnings)


def _embedded_tiff(data: bytes) -> tuple[tiff.TiffStructure | None, int]:
    """Best-effort EXIF discovery inside RAW and ISO-BMFF files."""
    if tiff.looks_like_tiff(data):
        return tiff.parse_tiff(data, follow_ifd1=False), 0

    cmt1 = data.find(b"CMT1")
    if cmt1 != -1:
        # CR3: CMT1 holds IFD0, CMT2 the Exif IFD and CMT4 the GPS IFD, each as its own TIFF.
        structure = tiff.parse_tiff(data[cmt1 + 4 :], follow_ifd1=False)
        for box, attr in ((b"CMT2", "exif"), (b"CMT4", "gps")):
            pos = data.find(box)
            if pos == -1:
                continue
            try:
                setattr(structure, attr, tiff.parse_tiff(data[pos + 4 :], follow_ifd1=False).ifd0)
            except ParseError as exc:
                structure.warnings.append(f"{box.decode()}: {exc}")
                if attr == "gps":
                    structure.gps_broken = True
        return structure, cmt1 + 4

    marker = data.find(jpeg.EXIF_PREFIX)
    if marker != -1:
        start = marker + len(jpeg.EXIF_PREFIX)
        return tiff.parse_tiff(data[start:], follow_ifd1=False), start
    return None, 0


def _read_sidecar_kind(snapshot: ContainerSnapshot, fields: _Fields) -> None:
    try:
        with snapshot.path.open("rb") as fh:
            head = fh.read(SIDECAR_SCAN_LIMIT)
        structure, base = _embedded_tiff(head)
    except (OSError, ParseError) as exc:
        logger.info("embedded_metadata_unavailable", error=str(exc))
        structure = None
    if structure is not None:
        snapshot.structure = structure
        snapshot.warnings.extend(structure.warnings)
        _record_locations(structure, base, fields)
        _fill_from_tiff(structure, fields)

    sidecar = snapshot.sidecar_path
    if sidecar.is_file():
        snapshot.xmp_packet = sidecar.read_bytes()
        fields.locations["sidecar"] = (0, len(snapshot.xmp_packet))
        _fill_from_xmp(snapshot.xmp_packet, fields, snapshot.warnings)


_READERS = {
    ContainerFamily.JPEG: _read_jpeg,
    ContainerFamily.TIFF: _read_tiff,
    ContainerFamily.PNG: _read_png,
    ContainerFamily.WEBP: _read_webp,
    ContainerFamily.SIDECAR: _read_sidecar_kind,
}


def read_container(path: Path, kind: ContainerKind) -> ContainerSnapshot:
    """
    Parse a container into a snapshot.

    Raises:
        ParseError: The container signature or mandatory structure is invalid

    """
    snapshot = ContainerSnapshot(path=path, kind=kind, metadata=ExistingMetadata())
    fields = _Fields()
    if not kind.is_sidecar:
        snapshot.data = path.read_bytes()
    _READERS[kind.family](snapshot, fields)
    snapshot.metadata = fields.build()
    logger.debug(
        "metadata_read",
        kind=str(kind),
        title=snapshot.metadata.title,
        keywords=len(snapshot.metadata.keywords),
        has_gps=snapshot.metadata.has_gps,
    )
    return snapshot


def read_metadata(path: Path) -> ExistingMetadata:
    """Detect the container kind and return its existing metadata."""
    return read_container(path, detect_kind(path)).metadata
