"""Preview preparation: turn any supported image (RAW included) into a small JPEG for a backend."""

from io import BytesIO
from pathlib import Path

import rawpy
from loguru import logger
from PIL import Image
from pydantic_ai import BinaryContent

from exif_ai.models import ContainerKind


DEFAULT_JPEG_QUALITY = 80
DEFAULT_DIMENSIONS = 1280
NON_RAW_EXTENSIONS = {
    ".jpg",
    ".jpeg",
    ".jpe",
    ".png",
    ".webp",
    ".tif",
    ".tiff",
    ".heic",
    ".heif",
    ".avif",
}


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    logger.debug("opening_image_with_pil", extension=suffix or "")
    return Image.open(image_path)


def prepare_preview(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Decode, flatten and downscale an image into in-memory JPEG bytes.

    No temporary files are created.

    Args:
        image_path: Path to the input image file
        jpg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels (downscale only)

    Returns:
        BinaryContent holding the JPEG bytes

    """
    with _pil_from_image_path(image_path) as opened:
        img = opened
        # Composite alpha onto white background if present
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = img.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()
    logger.debug(
        "preview_prepared",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


def preview_or_original(
    image_path: Path,
    kind: ContainerKind,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """Prepare a preview, or fall back to the untouched file bytes with their native MIME type."""
    try:
        return prepare_preview(image_path, jpg_quality=jpg_quality, max_size=max_size)
    except Exception as exc:  # noqa: BLE001
        logger.warning("preview_failed_sending_original", error=str(exc), mime_type=kind.mime_type)
        return BinaryContent(data=image_path.read_bytes(), media_type=kind.mime_type)
