"""Tests for container classification."""

from collections.abc import Callable
from pathlib import Path

import pytest

from exif_ai.detect import classify_bytes, classify_extension, detect_kind, is_supported
from exif_ai.errors import UnsupportedFormat
from exif_ai.models import ContainerFamily


def test_classify_bytes_recognises_native_signatures() -> None:
    """Magic bytes map JPEG, PNG, WebP and TIFF to their native families."""
    assert classify_bytes(b"\xff\xd8\xff\xe0").family is ContainerFamily.JPEG
    assert classify_bytes(b"\x89PNG\r\n\x1a\n\0\0").family is ContainerFamily.PNG
    assert classify_bytes(b"RIFF\x10\0\0\0WEBPVP8 ").family is ContainerFamily.WEBP
    assert classify_bytes(b"MM\0*\0\0\0\x08").family is ContainerFamily.TIFF


def test_tiff_signature_with_raw_extension_is_sidecar_kind() -> None:
    """RAW formats built on TIFF are sidecar kinds, keyed by their extension."""
    kind = classify_bytes(b"II*\0\x08\0\0\0", "NEF")
    assert kind is not None
    assert kind.is_sidecar
    assert str(kind) == "sidecar(nef)"
    assert kind.mime_type == "image/x-nikon-nef"


def test_ftyp_brands_identify_heif_avif_and_cr3() -> None:
    """ISO-BMFF files are classified by their ftyp brand."""
    heic = b"\0\0\0\x18ftypheic\0\0\0\0mif1heic"
    avif = b"\0\0\0\x1cftypavif\0\0\0\0avifmif1miaf"
    cr3 = b"\0\0\0\x18ftypcrx \0\0\0\x01crx isom"
    assert str(classify_bytes(heic, "heic")) == "sidecar(heic)"
    assert str(classify_bytes(avif, "avif")) == "sidecar(avif)"
    assert str(classify_bytes(cr3, "cr3")) == "sidecar(cr3)"
    assert classify_bytes(b"FUJIFILMCCD-RAW 0201").subtype == "raf"


def test_extension_fallback_and_unknown() -> None:
    """Unrecognised content falls back to the extension; unknown extensions give None."""
    assert str(classify_extension(".Dng")) == "sidecar(dng)"
    assert classify_extension("jpeg").family is ContainerFamily.JPEG
    assert classify_extension("bmp") is None


def test_detect_kind_reads_content_before_extension(make_image: Callable[..., Path]) -> None:
    """A PNG saved under a .jpg name is still detected as PNG."""
    path = make_image("misnamed.jpg", format="PNG")
    assert detect_kind(path).family is ContainerFamily.PNG


def test_detect_kind_rejects_unknown_files(tmp_path: Path) -> None:
    """Files with neither a known signature nor a known extension raise UnsupportedFormat."""
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    with pytest.raises(UnsupportedFormat):
        detect_kind(path)


def test_is_supported_is_case_insensitive() -> None:
    """Supported extensions are matched without regard to case."""
    assert is_supported(Path("IMG_0001.CR3"))
    assert is_supported(Path("a.webp"))
    assert not is_supported(Path("a.xmp"))
    assert not is_supported(Path("a.jpg.bak"))
