"""Tests for metadata removal."""

from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image

from exif_ai import webp
from exif_ai.errors import UnsupportedOperation
from exif_ai.models import FieldSelection, GeneratedMetadata
from exif_ai.reader import read_metadata
from exif_ai.writer import clear_metadata, write_metadata


GENERATED = GeneratedMetadata(title="Quiet Street", description="An empty street.", tags=["Street"])


def _tag(path: Path) -> None:
    write_metadata(path, read_metadata(path), GENERATED, FieldSelection())


def test_clear_jpeg_drops_exif_xmp_and_iptc(make_jpeg: Callable[..., Path]) -> None:
    """All metadata segments are removed and the image still decodes."""
    path = make_jpeg()
    _tag(path)

    removed = clear_metadata(path)

    assert removed == ["exif", "xmp", "iptc"]
    assert read_metadata(path).title is None
    assert clear_metadata(path) == []
    with Image.open(path) as img:
        img.load()


def test_clear_png_and_webp(make_image: Callable[..., Path]) -> None:
    """PNG text/eXIf chunks and WebP EXIF/XMP chunks (with their VP8X flags) are dropped."""
    png_path = make_image("a.png", format="PNG")
    webp_path = make_image("a.webp", format="WEBP")
    _tag(png_path)
    _tag(webp_path)

    assert set(clear_metadata(png_path)) == {"iTXt"}
    assert set(clear_metadata(webp_path)) == {"EXIF", "XMP"}

    chunks = webp.parse_webp(webp_path.read_bytes())
    vp8x = chunks[webp.find(chunks, webp.VP8X)]
    assert not vp8x.data[0] & (webp.FLAG_EXIF | webp.FLAG_XMP)
    assert read_metadata(png_path).title is None
    assert read_metadata(webp_path).keywords == []


def test_clear_dry_run_changes_nothing(make_jpeg: Callable[..., Path]) -> None:
    """A dry run reports what would be removed without writing."""
    path = make_jpeg()
    _tag(path)
    before = path.read_bytes()

    assert clear_metadata(path, dry_run=True) == ["exif", "xmp", "iptc"]
    assert path.read_bytes() == before


def test_clear_sidecar_kind_deletes_sidecar(tmp_path: Path) -> None:
    """For RAW files the sidecar is the metadata, so clearing deletes it."""
    raw = tmp_path / "IMG_0003.cr2"
    raw.write_bytes(b"II*\0\x08\0\0\0\0\0\0\0\0\0")
    _tag(raw)
    sidecar = tmp_path / "IMG_0003.cr2.xmp"
    assert sidecar.exists()

    assert clear_metadata(raw) == ["sidecar"]
    assert not sidecar.exists()
    assert clear_metadata(raw) == []


def test_clear_bare_tiff_is_refused(make_image: Callable[..., Path]) -> None:
    """Bare TIFF clearing raises UnsupportedOperation and leaves the file untouched."""
    path = make_image("scan.tiff", format="TIFF")
    before = path.read_bytes()

    with pytest.raises(UnsupportedOperation):
        clear_metadata(path)

    assert path.read_bytes() == before
