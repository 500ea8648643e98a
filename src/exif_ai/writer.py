"""
Writing generated metadata back into (or beside) a container.

Planning decides which fields are eligible; the per-container strategies then serialise new bytes
entirely in memory and hand them to a single atomic commit. A dry run runs the same code path and
skips only the commit.
"""

import os
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from exif_ai import gps, iptc, jpeg, png, tiff, webp, xmp
from exif_ai.detect import detect_kind
from exif_ai.errors import ParseError, UnsupportedOperation, WriteError
from exif_ai.models import (
    ContainerFamily,
    Coordinate,
    ExistingMetadata,
    FieldSelection,
    GeneratedMetadata,
    WriteOutcome,
)
from exif_ai.reader import ContainerSnapshot, read_container


@dataclass(frozen=True)
class WritePlan:
    """Fields that passed the eligibility rule. None means "leave alone"."""

    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    subject: str | None = None
    gps: Coordinate | None = None

    @property
    def is_empty(self) -> bool:
        return not any(
            value is not None
            for value in (self.title, self.description, self.tags, self.subject, self.gps)
        )

    @property
    def names(self) -> list[str]:
        return [
            name
            for name in ("title", "description", "tags", "subject", "gps")
            if getattr(self, name) is not None
        ]


def _eligible(
    requested: bool,  # noqa: FBT001
    value: object,
    existing: object,
    *,
    overwrite: bool,
) -> bool:
    if not requested or value in (None, "", []):
        return False
    return overwrite or existing in (None, "", [])


def plan_fields(
    existing: ExistingMetadata,
    generated: GeneratedMetadata,
    selection: FieldSelection,
    *,
    gps_candidate: Coordinate | None = None,
) -> WritePlan:
    """
    Apply the eligibility rule: requested AND non-empty AND (overwrite OR absent).

    GPS ignores `overwrite_existing`; `gps_candidate` must already be the GPS policy's decision.
    """
    overwrite = selection.overwrite_existing
    return WritePlan(
        title=generated.title
        if _eligible(selection.write_title, generated.title, existing.title, overwrite=overwrite)
        else None,
        description=generated.description
        if _eligible(
            selection.write_description,
            generated.description,
            existing.description,
            overwrite=overwrite,
        )
        else None,
        tags=list(generated.tags)
        if _eligible(selection.write_tags, generated.tags, existing.keywords, overwrite=overwrite)
        else None,
        subject=generated.subject
        if _eligible(
            selection.write_subject, generated.subject, existing.subject, overwrite=overwrite
        )
        else None,
        gps=gps_candidate if selection.write_gps else None,
    )


# --------------------------------------------------------------------------------------------------
# commit
# --------------------------------------------------------------------------------------------------


def _read_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# os.umask can only be read by setting it, so it is read once at import.
NEW_FILE_MODE = 0o666 & ~_read_umask()


def commit_bytes(path: Path, data: bytes) -> None:
    """
    Atomically replace `path` with `data`.

    The bytes go to a temporary file in the same directory, which is flushed, fsynced and given
    the original's permission bits before being renamed over the target. A new file gets the
    default mode for the process umask instead of the 0600 of the temporary file.
    """
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_name = tmp.name
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        if path.exists():
            shutil.copymode(path, tmp_name)
        else:
            os.chmod(tmp_name, NEW_FILE_MODE)  # noqa: PTH101
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        msg = f"failed to write {path}: {exc}"
        raise WriteError(msg) from exc


# --------------------------------------------------------------------------------------------------
# EXIF field mapping
# --------------------------------------------------------------------------------------------------


def apply_exif_fields(structure: tiff.TiffStructure, plan: WritePlan) -> list[str]:
    """Set the planned fields on a TIFF structure in place; return the fields written."""
    bo = structure.byteorder
    ifd0 = structure.ifd0
    written: list[str] = []
    if plan.title is not None:
        ifd0.set(tiff.ascii_entry(tiff.TAG_IMAGE_DESCRIPTION, plan.title))
        ifd0.set(tiff.xp_entry(tiff.TAG_XP_TITLE, plan.title))
        written.append("title")
    if plan.description is not None:
        if structure.exif is None:
            structure.exif = tiff.Ifd()
        structure.exif.set(tiff.user_comment_entry(plan.description, bo))
        ifd0.set(tiff.xp_entry(tiff.TAG_XP_COMMENT, plan.description))
        written.append("description")
    if plan.tags is not None:
        ifd0.set(tiff.xp_entry(tiff.TAG_XP_KEYWORDS, "; ".join(plan.tags)))
        written.append("tags")
    if plan.subject is not None:
        ifd0.set(tiff.xp_entry(tiff.TAG_XP_SUBJECT, plan.subject))
        written.append("subject")
    if plan.gps is not None:
        if structure.gps is None:
            structure.gps = tiff.Ifd()
        _set_gps(structure.gps, plan.gps, bo)
        structure.gps_broken = False
        written.append("gps")
    return written


def _set_gps(gps_ifd: tiff.Ifd, coordinate: Coordinate, byteorder: str) -> None:
    lat, lon = coordinate.latitude, coordinate.longitude
    gps_ifd.set(tiff.byte_entry(tiff.GPS_VERSION_ID, bytes([2, 3, 0, 0])))
    gps_ifd.set(tiff.ascii_entry(tiff.GPS_LATITUDE_REF, gps.hemisphere(lat, latitude=True)))
    gps_ifd.set(tiff.rational_entry(tiff.GPS_LATITUDE, gps.to_dms_rationals(lat), byteorder))
    gps_ifd.set(tiff.ascii_entry(tiff.GPS_LONGITUDE_REF, gps.hemisphere(lon, latitude=False)))
    gps_ifd.set(tiff.rational_entry(tiff.GPS_LONGITUDE, gps.to_dms_rationals(lon), byteorder))


def _structure_for_edit(snapshot: ContainerSnapshot) -> tiff.TiffStructure:
    if snapshot.structure is not None:
        return snapshot.structure.copy()
    return tiff.TiffStructure.empty()


def _without_exif_targets(plan: WritePlan, outcome: WriteOutcome, reason: str) -> WritePlan:
    """Drop fields that only have EXIF targets when the EXIF payload must not be touched."""
    skipped = []
    if plan.subject is not None:
        skipped.append("subject")
    if plan.gps is not None:
        skipped.append("gps")
    outcome.skipped.extend(f"{name}: {reason}" for name in skipped)
    return WritePlan(title=plan.title, description=plan.description, tags=plan.tags)


def _xmp_packet(existing: bytes | None, plan: WritePlan, *, with_gps: bool = False) -> bytes:
    try:
        return xmp.merge_packet(
            existing,
            title=plan.title,
            description=plan.description,
            keywords=plan.tags,
            coordinate=plan.gps if with_gps else None,
        )
    except ParseError as exc:
        # An unreadable packet is replaced rather than merged into.
        logger.warning("xmp_replaced_unreadable_packet", error=str(exc))
        return xmp.merge_packet(
            None,
            title=plan.title,
            description=plan.description,
            keywords=plan.tags,
            coordinate=plan.gps if with_gps else None,
        )


def _mark(outcome: WriteOutcome, names: list[str]) -> None:
    for name in names:
        setattr(outcome, name, True)


# --------------------------------------------------------------------------------------------------
# strategies
# --------------------------------------------------------------------------------------------------


def _write_jpeg(snapshot: ContainerSnapshot, plan: WritePlan, outcome: WriteOutcome) -> bytes:
    if snapshot.jpeg_file is None:
        msg = "JPEG snapshot has no parsed segments"
        raise WriteError(msg)
    parsed = jpeg.JpegFile(list(snapshot.jpeg_file.segments), snapshot.jpeg_file.tail)
    written: set[str] = set()

    if snapshot.exif_broken:
        plan = _without_exif_targets(plan, outcome, "existing EXIF is unreadable")
    else:
        structure = _structure_for_edit(snapshot)
        names = apply_exif_fields(structure, plan)
        if names:
            jpeg.set_exif(parsed, tiff.build_blob(structure))
            written.update(names)

    if plan.title is not None or plan.description is not None or plan.tags is not None:
        jpeg.set_xmp(parsed, _xmp_packet(snapshot.xmp_packet, plan))
        try:
            app13 = iptc.merge_payload(
                snapshot.iptc_payload,
                title=plan.title,
                description=plan.description,
                keywords=plan.tags,
            )
        except ParseError as exc:
            logger.warning("iptc_replaced_unreadable_block", error=str(exc))
            app13 = iptc.merge_payload(
                None, title=plan.title, description=plan.description, keywords=plan.tags
            )
        jpeg.set_photoshop(parsed, app13)
        written.update(
            name for name in ("title", "description", "tags") if getattr(plan, name) is not None
        )

    _mark(outcome, sorted(written))
    return parsed.to_bytes()


def _write_tiff(snapshot: ContainerSnapshot, plan: WritePlan, outcome: WriteOutcome) -> bytes:
    structure = _structure_for_edit(snapshot)
    names = apply_exif_fields(structure, plan)
    if plan.title is not None or plan.description is not None or plan.tags is not None:
        packet = _xmp_packet(snapshot.xmp_packet, plan)
        structure.ifd0.set(tiff.byte_entry(tiff.TAG_XMP, packet))
    _mark(outcome, names)
    return tiff.append_rebuilt(snapshot.data, structure)


def _write_png(snapshot: ContainerSnapshot, plan: WritePlan, outcome: WriteOutcome) -> bytes:
    chunks = list(snapshot.png_chunks)
    if plan.subject is not None:
        outcome.skipped.append("subject: no PNG target")

    replace: dict[str, png.Chunk] = {}
    if plan.title is not None:
        replace[png.TITLE_KEYWORD] = png.make_itxt(png.TITLE_KEYWORD, plan.title)
    if plan.description is not None:
        replace[png.DESCRIPTION_KEYWORD] = png.make_itxt(png.DESCRIPTION_KEYWORD, plan.description)
    if replace or plan.tags is not None:
        packet = _xmp_packet(snapshot.xmp_packet, plan)
        replace[png.XMP_KEYWORD] = png.make_itxt(png.XMP_KEYWORD, packet)
    chunks = [c for c in chunks if png.text_keyword(c) not in replace]

    if plan.gps is not None:
        if snapshot.exif_broken:
            outcome.skipped.append("gps: existing eXIf is unreadable")
        else:
            structure = _structure_for_edit(snapshot)
            apply_exif_fields(structure, WritePlan(gps=plan.gps))
            exif_chunk = png.Chunk.build(b"eXIf", tiff.build_blob(structure))
            index = png.first_index(chunks, b"eXIf")
            if index is not None:
                chunks[index] = exif_chunk
            else:
                chunks.insert(_before_idat(chunks), exif_chunk)
            outcome.gps = True

    if replace:
        position = _before_idat(chunks)
        chunks[position:position] = list(replace.values())
        outcome.title = plan.title is not None
        outcome.description = plan.description is not None
        outcome.tags = plan.tags is not None
    return png.serialize_png(chunks, png.trailer(snapshot.data, snapshot.png_chunks))


def _before_idat(chunks: list[png.Chunk]) -> int:
    index = png.first_index(chunks, b"IDAT")
    if index is None:
        index = png.first_index(chunks, b"IEND")
    return index if index is not None else len(chunks)


def _write_webp(snapshot: ContainerSnapshot, plan: WritePlan, outcome: WriteOutcome) -> bytes:
    chunks = list(snapshot.webp_chunks)
    written: set[str] = set()
    if snapshot.exif_broken:
        plan = _without_exif_targets(plan, outcome, "existing EXIF is unreadable")
    else:
        structure = _structure_for_edit(snapshot)
        names = apply_exif_fields(structure, plan)
        if names:
            webp.set_chunk(chunks, webp.EXIF, tiff.build_blob(structure))
            written.update(names)
    if plan.title is not None or plan.description is not None or plan.tags is not None:
        webp.set_chunk(chunks, webp.XMP, _xmp_packet(snapshot.xmp_packet, plan))
        written.update(
            name for name in ("title", "description", "tags") if getattr(plan, name) is not None
        )
    webp.set_flags(
        chunks,
        exif=webp.find(chunks, webp.EXIF) is not None,
        xmp=webp.find(chunks, webp.XMP) is not None,
    )
    _mark(outcome, sorted(written))
    return webp.serialize_webp(chunks, webp.trailer(snapshot.data))


def _write_sidecar(snapshot: ContainerSnapshot, plan: WritePlan, outcome: WriteOutcome) -> bytes:
    if plan.subject is not None:
        outcome.skipped.append("subject: no sidecar target")
    packet = _xmp_packet(snapshot.xmp_packet, plan, with_gps=True)
    outcome.title = plan.title is not None
    outcome.description = plan.description is not None
    outcome.tags = plan.tags is not None
    outcome.gps = plan.gps is not None
    outcome.sidecar_path = snapshot.sidecar_path
    return packet


_STRATEGIES = {
    ContainerFamily.JPEG: _write_jpeg,
    ContainerFamily.TIFF: _write_tiff,
    ContainerFamily.PNG: _write_png,
    ContainerFamily.WEBP: _write_webp,
    ContainerFamily.SIDECAR: _write_sidecar,
}

# Fields each family can store anywhere
_SUPPORTED = {
    ContainerFamily.PNG: {"title", "description", "tags", "gps"},
    ContainerFamily.SIDECAR: {"title", "description", "tags", "gps"},
}


def effective_plan(plan: WritePlan, family: ContainerFamily) -> WritePlan:
    """Plan restricted to fields the container family has a target for."""
    supported = _SUPPORTED.get(family)
    if supported is None:
        return plan
    return WritePlan(**{name: getattr(plan, name) for name in plan.names if name in supported})


def write_planned(
    snapshot: ContainerSnapshot,
    plan: WritePlan,
    *,
    dry_run: bool = False,
    before_commit: Callable[[], None] | None = None,
) -> WriteOutcome:
    """
    Serialise `plan` into the snapshot's container and commit it (unless `dry_run`).

    When no field is eligible the target is not touched at all. `before_commit` runs only when
    changed bytes are about to be committed (the pipeline takes its backup there).

    Raises:
        WriteError: Serialisation or the atomic commit failed

    """
    family = snapshot.kind.family
    outcome = WriteOutcome(dry_run=dry_run)
    if effective_plan(plan, family).is_empty:
        if plan.subject is not None:
            outcome.skipped.append(f"subject: no {family.value} target")
        logger.info("no_eligible_fields", kind=str(snapshot.kind))
        return outcome

    new_bytes = _STRATEGIES[family](snapshot, plan, outcome)
    target = snapshot.sidecar_path if snapshot.kind.is_sidecar else snapshot.path
    if not outcome.written_fields:
        logger.info("no_writable_fields", target=str(target), skipped=outcome.skipped)
        return outcome

    if dry_run:
        logger.info(
            "dry_run_write_skipped",
            target=str(target),
            fields=outcome.written_fields,
            size=len(new_bytes),
        )
        return outcome

    if before_commit is not None:
        before_commit()
    commit_bytes(target, new_bytes)
    logger.info(
        "metadata_written",
        target=str(target),
        mode="sidecar" if snapshot.kind.is_sidecar else "embedded",
        fields=outcome.written_fields,
        skipped=outcome.skipped,
    )
    return outcome


def write_metadata(
    path: Path,
    existing: ExistingMetadata,
    generated: GeneratedMetadata,
    selection: FieldSelection,
    *,
    dry_run: bool = False,
) -> WriteOutcome:
    """
    Detect, re-read and write `generated` into `path` under the eligibility and GPS rules.

    `existing` drives eligibility; the container is re-parsed to obtain its structure.
    """
    snapshot = read_container(path, detect_kind(path))
    candidate = gps.decide(existing.has_gps or snapshot.metadata.has_gps, generated.gps)
    plan = plan_fields(existing, generated, selection, gps_candidate=candidate)
    return write_planned(snapshot, plan, dry_run=dry_run)


# --------------------------------------------------------------------------------------------------
# clear
# --------------------------------------------------------------------------------------------------


def clear_metadata(path: Path, *, dry_run: bool = False) -> list[str]:
    """
    Remove metadata blocks from a container; return the names of what was (or would be) removed.

    Raises:
        UnsupportedOperation: Bare TIFF, whose metadata shares IFD0 with the image structure
        ParseError: The container is structurally invalid
        WriteError: The atomic commit failed

    """
    kind = detect_kind(path)
    if kind.family is ContainerFamily.TIFF:
        msg = "clearing metadata from a bare TIFF is not supported"
        raise UnsupportedOperation(msg)

    if kind.is_sidecar:
        sidecar = xmp.sidecar_path_for(path)
        if not sidecar.exists():
            return []
        if not dry_run:
            try:
                sidecar.unlink()
            except OSError as exc:
                msg = f"failed to delete {sidecar}: {exc}"
                raise WriteError(msg) from exc
        logger.info("sidecar_removed", target=str(sidecar), dry_run=dry_run)
        return ["sidecar"]

    data = path.read_bytes()
    if kind.family is ContainerFamily.JPEG:
        parsed = jpeg.parse_jpeg(data)
        removed = jpeg.strip_metadata(parsed)
        new_bytes = parsed.to_bytes()
    elif kind.family is ContainerFamily.PNG:
        chunks = png.parse_png(data)
        kept = [c for c in chunks if c.type != b"eXIf" and c.type not in png.TEXT_TYPES]
        removed = [c.type.decode("latin-1") for c in chunks if c not in kept]
        new_bytes = png.serialize_png(kept, png.trailer(data, chunks))
    else:
        chunks = webp.parse_webp(data)
        kept = [c for c in chunks if c.fourcc not in (webp.EXIF, webp.XMP)]
        removed = [c.fourcc.decode("latin-1").strip() for c in chunks if c not in kept]
        if removed and webp.find(kept, webp.VP8X) is not None:
            webp.set_flags(kept, exif=False, xmp=False)
        new_bytes = webp.serialize_webp(kept, webp.trailer(data))

    if not removed:
        logger.info("nothing_to_clear", target=str(path))
        return []
    if not dry_run:
        commit_bytes(path, new_bytes)
    logger.info("metadata_cleared", target=str(path), removed=removed, dry_run=dry_run)
    return removed
