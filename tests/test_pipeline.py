"""Tests for the per-image pipeline, batch processing and input discovery."""

import hashlib
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

from exif_ai import jpeg, tiff, xmp
from exif_ai.config import Config, OutputSettings
from exif_ai.failover import FailoverOrchestrator
from exif_ai.models import Coordinate, GeneratedMetadata
from exif_ai.pipeline import Pipeline, collect_images
from exif_ai.reader import read_metadata


GENERATED = GeneratedMetadata(
    title="Orange Wall",
    description="A flat orange wall in soft light.",
    tags=["Orange", "Wall", "Texture"],
    gps=Coordinate(latitude=40.4168, longitude=-3.7038),
)


class StaticBackend:
    name = "static"

    def __init__(self, result: GeneratedMetadata = GENERATED) -> None:
        self.result = result
        self.mime_types: list[str] = []

    def available(self) -> bool:
        return True

    def analyze(self, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:  # noqa: ARG002
        self.mime_types.append(mime_type)
        return self.result


def _pipeline(*, dry_run: bool = False, backup: bool = True) -> tuple[Pipeline, StaticBackend]:
    backend = StaticBackend()
    config = Config(output=OutputSettings(dry_run=dry_run, backup_originals=backup), workers=2)
    return Pipeline(config, FailoverOrchestrator([backend])), backend


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def test_batch_isolates_a_corrupt_file(
    make_jpeg: Callable[..., Path],
    make_image: Callable[..., Path],
) -> None:
    """One corrupt image fails on its own; every other image is written."""
    good = [
        make_jpeg("a.jpg"),
        make_jpeg("b.jpg"),
        make_image("c.png", format="PNG"),
        make_image("d.webp", format="WEBP"),
    ]
    broken = good[0].parent / "broken.jpg"
    broken.write_bytes(b"\xff\xd8\xff\xe1\xff\xff")
    pipeline, backend = _pipeline(backup=False)

    results = pipeline.process_batch([*good, broken])

    by_path = {r.path: r for r in results}
    assert len(results) == 5  # noqa: PLR2004
    assert all(by_path[p].ok for p in good)
    assert not by_path[broken].ok
    assert by_path[broken].error_type == "ParseError"
    assert by_path[good[0]].backend == "static"
    assert set(backend.mime_types) == {"image/jpeg"}
    assert read_metadata(good[3]).title == "Orange Wall"


def test_backup_created_once_and_never_overwritten(make_jpeg: Callable[..., Path]) -> None:
    """The first live write snapshots the original; later writes keep that snapshot."""
    path = make_jpeg()
    original = path.read_bytes()
    pipeline, _ = _pipeline()

    first = pipeline.process(path)

    backup = path.with_name("photo.jpg.bak")
    assert first.ok
    assert first.backup_path == backup
    assert backup.read_bytes() == original
    assert path.read_bytes() != original

    overwrite = Config(output=OutputSettings(backup_originals=True))
    overwrite = overwrite.model_copy(
        update={"fields": overwrite.fields.model_copy(update={"overwrite_existing": True})}
    )
    Pipeline(overwrite, pipeline.orchestrator).process(path)

    assert backup.read_bytes() == original


def test_no_backup_when_nothing_would_be_written(
    make_jpeg: Callable[..., Path],
    exif: SimpleNamespace,
) -> None:
    """Files that need no change are neither backed up nor rewritten."""
    blob = exif.build(
        [
            exif.ascii(tiff.TAG_IMAGE_DESCRIPTION, "Existing"),
            (tiff.TAG_XP_COMMENT, tiff.BYTE, 4, "ok".encode("utf-16-le")),
            (tiff.TAG_XP_KEYWORDS, tiff.BYTE, 4, "k".encode("utf-16-le") + b"\0\0"),
        ],
        exif.gps(1.0, 2.0),
    )
    path = make_jpeg(exif=blob)
    digest = _sha256(path)
    pipeline, _ = _pipeline()

    result = pipeline.process(path)

    assert result.ok
    assert result.outcome is not None
    assert result.outcome.written_fields == []
    assert result.backup_path is None
    assert _sha256(path) == digest


def test_no_backup_when_planned_fields_have_no_target(make_jpeg: Callable[..., Path]) -> None:
    """Subject planned against unreadable EXIF is dropped by the writer, so no backup is taken."""
    path = make_jpeg(exif=b"not a tiff header at all")
    parsed = jpeg.parse_jpeg(path.read_bytes())
    packet = xmp.merge_packet(
        None, title=GENERATED.title, description=GENERATED.description, keywords=GENERATED.tags
    )
    jpeg.set_xmp(parsed, packet)
    path.write_bytes(parsed.to_bytes())
    digest = _sha256(path)
    backend = StaticBackend(GENERATED.model_copy(update={"subject": "Orange wall"}))
    config = Config(output=OutputSettings(backup_originals=True))

    result = Pipeline(config, FailoverOrchestrator([backend])).process(path)

    assert result.ok
    assert result.outcome is not None
    assert result.outcome.written_fields == []
    assert any(reason.startswith("subject") for reason in result.outcome.skipped)
    assert result.backup_path is None
    assert not path.with_name("photo.jpg.bak").exists()
    assert _sha256(path) == digest


def test_dry_run_touches_nothing(make_jpeg: Callable[..., Path], tmp_path: Path) -> None:
    """Dry runs report planned fields without backups, sidecars or byte changes."""
    path = make_jpeg()
    raw = tmp_path / "DSC_0009.nef"
    raw.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")
    digests = {p: _sha256(p) for p in (path, raw)}
    pipeline, _ = _pipeline(dry_run=True)

    results = pipeline.process_batch([path, raw])

    assert all(r.ok for r in results)
    assert all(r.outcome is not None and r.outcome.dry_run for r in results)
    assert {p: _sha256(p) for p in (path, raw)} == digests
    assert sorted(p.name for p in tmp_path.iterdir()) == ["DSC_0009.nef", "photo.jpg"]


def test_batch_shot_pair_gets_one_sidecar_each(tmp_path: Path) -> None:
    """Two images sharing a stem are processed concurrently into separate sidecars."""
    raw = tmp_path / "IMG_7.cr2"
    raw.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")
    heic = tmp_path / "IMG_7.heic"
    heic.write_bytes(b"\0\0\0\x18ftypheic\0\0\0\0mif1heic" + b"\0" * 32)
    pipeline, _ = _pipeline()

    results = pipeline.process_batch([raw, heic])

    assert all(r.ok for r in results)
    assert sorted(p.name for p in tmp_path.glob("*.xmp")) == ["IMG_7.cr2.xmp", "IMG_7.heic.xmp"]
    assert all(r.backup_path is None for r in results)
    assert read_metadata(raw).keywords == ["Orange", "Wall", "Texture"]
    assert read_metadata(heic).keywords == ["Orange", "Wall", "Texture"]


def test_collect_images_expands_and_dedupes(tmp_path: Path) -> None:
    """Explicit files come first; directories contribute supported files only, once each."""
    nested = tmp_path / "trip" / "day1"
    nested.mkdir(parents=True)
    top = tmp_path / "trip" / "cover.jpg"
    deep = nested / "IMG_1.HEIC"
    ignored = [nested / "notes.txt", nested / "IMG_1.xmp", top.with_name("cover.jpg.bak")]
    for f in (top, deep, *ignored):
        f.write_bytes(b"x")

    files = collect_images([top, tmp_path / "trip", tmp_path / "missing"])
    flat = collect_images([tmp_path / "trip"], recursive=False)

    assert files == [top.resolve(), deep.resolve()]
    assert flat == [top.resolve()]
