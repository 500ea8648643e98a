"""Container classification: magic bytes first, file extension as the fallback."""

from pathlib import Path

from loguru import logger

from exif_ai.errors import UnsupportedFormat
from exif_ai.models import ContainerFamily, ContainerKind


RAW_EXTENSIONS = {"cr2", "cr3", "dng", "nef", "arw", "raf", "orf", "rw2", "pef", "srw"}
ISOBMFF_EXTENSIONS = {"heic", "heif", "avif"}
NATIVE_EXTENSIONS = {
    "jpg": ContainerFamily.JPEG,
    "jpeg": ContainerFamily.JPEG,
    "png": ContainerFamily.PNG,
    "webp": ContainerFamily.WEBP,
    "tif": ContainerFamily.TIFF,
    "tiff": ContainerFamily.TIFF,
}
SUPPORTED_EXTENSIONS = set(NATIVE_EXTENSIONS) | RAW_EXTENSIONS | ISOBMFF_EXTENSIONS

# ftyp major/compatible brands mapped to the sidecar subtype they imply
_FTYP_BRANDS = {
    b"heic": "heic",
    b"heix": "heic",
    b"hevc": "heic",
    b"mif1": "heif",
    b"msf1": "heif",
    b"avif": "avif",
    b"avis": "avif",
    b"crx ": "cr3",
}
_TIFF_SIGNATURES = (b"II*\0", b"MM\0*", b"IIRO", b"IIRS", b"IIU\0")
_HEADER_SIZE = 64


def _sidecar(subtype: str) -> ContainerKind:
    return ContainerKind(family=ContainerFamily.SIDECAR, subtype=subtype)


def classify_bytes(header: bytes, extension: str = "") -> ContainerKind | None:
    """
    Classify leading bytes, using the extension only to tell RAW-in-TIFF from plain TIFF.

    Examples:
        >>> str(classify_bytes(b"\\xff\\xd8\\xff\\xe0"))
        'jpeg'
        >>> str(classify_bytes(b"II*\\x00", "nef"))
        'sidecar(nef)'

    """
    ext = extension.lower().lstrip(".")
    if header.startswith(b"\xff\xd8\xff"):
        return ContainerKind(family=ContainerFamily.JPEG)
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return ContainerKind(family=ContainerFamily.PNG)
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return ContainerKind(family=ContainerFamily.WEBP)
    if header[:4] in _TIFF_SIGNATURES:
        if ext in RAW_EXTENSIONS:
            return _sidecar(ext)
        if header[:4] in (b"II*\0", b"MM\0*"):
            return ContainerKind(family=ContainerFamily.TIFF)
        # ORF/RW2 magic without a RAW extension still means RAW
        return _sidecar("orf" if header[2:4] in (b"RO", b"RS") else "rw2")
    if header[4:8] == b"ftyp":
        brands = [header[8:12]] + [header[i : i + 4] for i in range(16, min(len(header), 40), 4)]
        for brand in brands:
            subtype = _FTYP_BRANDS.get(brand)
            if subtype is not None:
                # A .heif file with a heic brand keeps its own extension as subtype
                if ext in ISOBMFF_EXTENSIONS and subtype in ("heic", "heif"):
                    return _sidecar(ext)
                return _sidecar(subtype)
    if header.startswith(b"FUJIFILMCCD-RAW"):
        return _sidecar("raf")
    return None


def classify_extension(extension: str) -> ContainerKind | None:
    ext = extension.lower().lstrip(".")
    if ext in RAW_EXTENSIONS or ext in ISOBMFF_EXTENSIONS:
        return _sidecar(ext)
    family = NATIVE_EXTENSIONS.get(ext)
    return ContainerKind(family=family) if family else None


def detect_kind(path: Path) -> ContainerKind:
    """
    Classify a file into a container kind.

    Raises:
        UnsupportedFormat: Neither the content nor the extension is recognised

    """
    ext = path.suffix.lower().lstrip(".")
    try:
        with path.open("rb") as fh:
            header = fh.read(_HEADER_SIZE)
    except OSError as exc:
        msg = f"cannot read {path}: {exc}"
        raise UnsupportedFormat(msg) from exc

    kind = classify_bytes(header, ext)
    if kind is None:
        kind = classify_extension(ext)
        if kind is not None:
            logger.debug("format_detected_by_extension", kind=str(kind), extension=ext)
    if kind is None:
        msg = f"unsupported image format: {path.name}"
        raise UnsupportedFormat(msg)
    logger.debug("format_detected", kind=str(kind))
    return kind


def is_supported(path: Path) -> bool:
    return path.suffix.lower().lstrip(".") in SUPPORTED_EXTENSIONS
