"""Photo ingestion and calibration.

Decodes uploads, snaps their aspect ratio to one the image model supports and
prepares the high-fidelity source frame fed into an initial render.
"""

from __future__ import annotations

import io

import structlog
from PIL import Image, UnidentifiedImageError

from imagine.models.contracts import AspectRatio, RoomPhoto

logger = structlog.get_logger()

# Gemini-supported aspect ratios and their numeric values (width/height)
SUPPORTED_RATIOS: list[tuple[AspectRatio, float]] = [
    ("1:1", 1.0),
    ("3:4", 3 / 4),
    ("4:3", 4 / 3),
    ("9:16", 9 / 16),
    ("16:9", 16 / 9),
]

# Near-lossless re-encode keeps the sensor grain the render prompt asks to preserve
VOLUMETRIC_JPEG_QUALITY = 99

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "HEIF": "image/heif",
}


class InvalidPhotoError(ValueError):
    pass


def detect_aspect_ratio(width: int, height: int) -> AspectRatio:
    """Snap width/height to the nearest supported ratio."""
    if width <= 0 or height <= 0:
        logger.warning("aspect_ratio_degenerate_image", width=width, height=height)
        return "1:1"
    ratio = width / height
    label, _ = min(SUPPORTED_RATIOS, key=lambda item: abs(item[1] - ratio))
    return label


def decode_image(data: bytes) -> Image.Image:
    """Fully decode image bytes, raising InvalidPhotoError on anything unreadable."""
    if not data:
        raise InvalidPhotoError("Empty image payload")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()  # force full decode to catch truncation
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InvalidPhotoError(f"Unreadable image: {exc}") from exc
    return image


def ingest_photo(data: bytes) -> RoomPhoto:
    image = decode_image(data)
    width, height = image.size
    photo = RoomPhoto(
        data=data,
        mime_type=_FORMAT_MIME.get(image.format or "", "image/jpeg"),
        width=width,
        height=height,
        aspect_ratio=detect_aspect_ratio(width, height),
    )
    logger.info(
        "photo_ingested",
        width=width,
        height=height,
        aspect_ratio=photo.aspect_ratio,
        size_bytes=len(data),
    )
    return photo


def image_to_bytes(image: Image.Image, fmt: str = "PNG", **save_kwargs: object) -> bytes:
    """Convert PIL Image to bytes."""
    buf = io.BytesIO()
    image.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def prepare_render_source(data: bytes) -> bytes:
    """Re-encode the original photo as a near-lossless JPEG for an initial render.

    Falls back to the untouched bytes if the photo cannot be re-encoded.
    """
    try:
        image = decode_image(data)
    except InvalidPhotoError:
        logger.warning("volumetric_prepare_skipped", size_bytes=len(data))
        return data
    return image_to_bytes(image.convert("RGB"), "JPEG", quality=VOLUMETRIC_JPEG_QUALITY)


def sniff_mime_type(data: bytes, default: str = "image/png") -> str:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return _FORMAT_MIME.get(image.format or "", default)
    except (UnidentifiedImageError, OSError):
        return default
