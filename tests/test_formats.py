"""Tests for the PNG, WebP, bare TIFF and sidecar write strategies."""

import hashlib
import stat
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

from exif_ai import png, tiff, webp, xmp
from exif_ai.models import Coordinate, FieldSelection, GeneratedMetadata, WriteOutcome
from exif_ai.reader import read_metadata
from exif_ai.writer import write_metadata


GENERATED = GeneratedMetadata(
    title="Blue Card",
    description="A plain blue card photographed under studio light.",
    tags=["Blue", "Studio", "Minimal"],
    gps=Coordinate(latitude=51.5007, longitude=-0.1246),
    subject="Card",
)


def _write(
    path: Path, generated: GeneratedMetadata = GENERATED, **selection: bool
) -> WriteOutcome:
    return write_metadata(path, read_metadata(path), generated, FieldSelection(**selection))


def test_png_text_chunks_precede_idat(make_image: Callable[..., Path]) -> None:
    """iTXt and eXIf chunks go before the first IDAT with valid CRCs."""
    path = make_image("card.png", format="PNG")

    outcome = _write(path)

    assert outcome.written_fields == ["title", "description", "tags", "gps"]
    assert outcome.skipped == ["subject: no PNG target"]
    chunks = png.parse_png(path.read_bytes())
    types = [chunk.type for chunk in chunks]
    idat = types.index(b"IDAT")
    assert types.index(b"iTXt") < idat
    assert types.index(b"eXIf") < idat
    with Image.open(path) as img:
        img.load()
        assert img.text["Title"] == "Blue Card"
        assert img.text["Description"] == GENERATED.description
        assert img.getpixel((0, 0)) == (20, 90, 160)


def test_png_read_back_and_replace(make_image: Callable[..., Path]) -> None:
    """A second overwriting run replaces tracked text chunks instead of duplicating them."""
    path = make_image("card.png", format="PNG")
    _write(path)
    _write(path, GeneratedMetadata(title="Red Card", tags=["Red"]), overwrite_existing=True)

    metadata = read_metadata(path)
    assert metadata.title == "Red Card"
    assert metadata.description == GENERATED.description
    assert metadata.keywords == ["Red"]
    assert metadata.gps is not None
    assert metadata.gps.longitude == pytest.approx(-0.1246, abs=1e-6)
    titles = [c for c in png.parse_png(path.read_bytes()) if png.text_keyword(c) == "Title"]
    assert len(titles) == 1


def test_webp_gets_extended_header_and_metadata(make_image: Callable[..., Path]) -> None:
    """EXIF and XMP chunks are added and the VP8X flags advertise them."""
    path = make_image("leaf.webp", format="WEBP", quality=90)

    outcome = _write(path)

    assert outcome.written_fields == ["title", "description", "tags", "gps", "subject"]
    chunks = webp.parse_webp(path.read_bytes())
    vp8x = chunks[webp.find(chunks, webp.VP8X)]
    assert vp8x.data[0] & webp.FLAG_EXIF
    assert vp8x.data[0] & webp.FLAG_XMP
    assert webp.find(chunks, webp.EXIF) < webp.find(chunks, webp.XMP)
    metadata = read_metadata(path)
    assert metadata.title == "Blue Card"
    assert metadata.subject == "Card"
    with Image.open(path) as img:
        assert img.size == (16, 12)


def test_bare_tiff_is_appended_and_stays_readable(make_image: Callable[..., Path]) -> None:
    """TIFF writes keep the original bytes and append rebuilt directories."""
    path = make_image("scan.tif", format="TIFF")
    original = path.read_bytes()

    outcome = _write(path)

    data = path.read_bytes()
    assert outcome.written_fields == ["title", "description", "tags", "gps", "subject"]
    assert len(data) > len(original)
    assert data[8 : len(original)] == original[8:]
    structure = tiff.parse_tiff(data, follow_ifd1=False)
    assert xmp.parse_packet(structure.ifd0.entries[tiff.TAG_XMP].data).title == "Blue Card"
    with Image.open(path) as img:
        assert img.tag_v2[tiff.TAG_IMAGE_DESCRIPTION] == "Blue Card"
        assert img.getpixel((0, 0)) == (20, 90, 160)
    assert read_metadata(path).keywords == ["Blue", "Studio", "Minimal"]


def test_raw_file_gets_sidecar_and_is_untouched(
    tmp_path: Path,
    exif: SimpleNamespace,
) -> None:
    """RAW files keep their bytes; metadata (GPS included) goes to <name>.<ext>.xmp."""
    raw = tmp_path / "DSC_0001.nef"
    raw.write_bytes(exif.build([exif.ascii(tiff.TAG_MAKE, "NIKON CORPORATION")]) + b"\0" * 64)
    digest = hashlib.sha256(raw.read_bytes()).hexdigest()

    outcome = _write(raw)

    assert outcome.sidecar_path == tmp_path / "DSC_0001.nef.xmp"
    assert outcome.written_fields == ["title", "description", "tags", "gps"]
    assert outcome.skipped == ["subject: no sidecar target"]
    assert hashlib.sha256(raw.read_bytes()).hexdigest() == digest

    metadata = read_metadata(raw)
    assert metadata.make == "NIKON CORPORATION"
    assert metadata.title == "Blue Card"
    assert metadata.gps is not None
    assert metadata.gps.latitude == pytest.approx(51.5007, abs=1e-5)
    assert metadata.gps.longitude == pytest.approx(-0.1246, abs=1e-5)


def test_existing_sidecar_fields_are_kept(tmp_path: Path) -> None:
    """Only fields absent from an existing sidecar are added; its other content survives."""
    image = tmp_path / "IMG_0002.heic"
    image.write_bytes(b"\0\0\0\x18ftypheic\0\0\0\0mif1heic" + b"\0" * 32)
    sidecar = tmp_path / "IMG_0002.heic.xmp"
    sidecar.write_bytes(xmp.merge_packet(None, title="Kept title"))

    outcome = _write(image)

    assert "title" not in outcome.written_fields
    assert "description" in outcome.written_fields
    fields = xmp.parse_packet(sidecar.read_bytes())
    assert fields.title == "Kept title"
    assert fields.description == GENERATED.description
    assert fields.gps is not None


def test_sibling_raws_sharing_a_stem_get_separate_sidecars(tmp_path: Path) -> None:
    """IMG_1.cr2 and IMG_1.heic each get their own sidecar and keep their own title."""
    raw = tmp_path / "IMG_1.cr2"
    raw.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")
    heic = tmp_path / "IMG_1.heic"
    heic.write_bytes(b"\0\0\0\x18ftypheic\0\0\0\0mif1heic" + b"\0" * 32)

    raw_outcome = _write(raw, GeneratedMetadata(title="Raw frame"))
    heic_outcome = _write(heic, GeneratedMetadata(title="Phone frame"))

    assert raw_outcome.sidecar_path == tmp_path / "IMG_1.cr2.xmp"
    assert heic_outcome.sidecar_path == tmp_path / "IMG_1.heic.xmp"
    assert raw_outcome.written_fields == ["title"]
    assert heic_outcome.written_fields == ["title"]
    assert read_metadata(raw).title == "Raw frame"
    assert read_metadata(heic).title == "Phone frame"
    assert not (tmp_path / "IMG_1.xmp").exists()


@pytest.mark.parametrize("name", ["card.png", "leaf.webp", "scan.tif", "DSC_0004.nef"])
def test_second_run_without_overwrite_leaves_target_byte_identical(
    make_image: Callable[..., Path],
    tmp_path: Path,
    name: str,
) -> None:
    """Once every field is present, a non-overwriting run leaves the target untouched."""
    if name.endswith(".nef"):
        path = tmp_path / name
        path.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")
        target = xmp.sidecar_path_for(path)
    else:
        path = make_image(name)
        target = path
    _write(path)
    digest = hashlib.sha256(target.read_bytes()).hexdigest()
    mtime = target.stat().st_mtime_ns

    outcome = _write(path)

    assert outcome.written_fields == []
    assert hashlib.sha256(target.read_bytes()).hexdigest() == digest
    assert target.stat().st_mtime_ns == mtime


def test_new_sidecar_gets_default_file_mode(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """A freshly created sidecar uses the umask-derived mode, not the temporary file's 0600."""
    monkeypatch.setattr("exif_ai.writer.NEW_FILE_MODE", 0o644)
    raw = tmp_path / "DSC_0005.nef"
    raw.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")

    _write(raw)

    assert stat.S_IMODE(xmp.sidecar_path_for(raw).stat().st_mode) == 0o644  # noqa: PLR2004


def test_webp_trailing_bytes_survive_rewrite(make_image: Callable[..., Path]) -> None:
    """Data appended after the RIFF chunk list is carried over verbatim."""
    path = make_image("leaf.webp", format="WEBP")
    tail = b"APPENDED-BY-ANOTHER-TOOL"
    path.write_bytes(path.read_bytes() + tail)

    outcome = _write(path)

    data = path.read_bytes()
    assert "title" in outcome.written_fields
    assert data.endswith(tail)
    assert webp.trailer(data) == tail
    assert read_metadata(path).title == "Blue Card"
