"""Capture-side media preparation.

This module provides:
- prepare_image: re-encode a captured image for upload
- detect_media_type: derive a MIME type from encoded bytes
- PreparedMedia: result of preparation

The media type of an attachment always comes from the bytes that will be
uploaded, never from the file name or a fixed default. Signatures are
encoded as PNG (they need transparency and sharp edges), everything else
as JPEG. Images are limited to 2560 px on their longest edge and are never
upscaled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from attachsync.core.ids import generate_object_id

logger = logging.getLogger(__name__)

MAX_DIMENSION = 2560
JPEG_QUALITY = 95
OCTET_STREAM = "application/octet-stream"

# Encoder name -> (file extension, MIME type)
_FORMATS: dict[str, tuple[str, str]] = {
    "JPEG": ("jpg", "image/jpeg"),
    "PNG": ("png", "image/png"),
}

SIGNATURE_ROLE = "signature"


@dataclass
class PreparedMedia:
    """A captured file ready to be enqueued.

    Attributes:
        attachment_id: Id used for the file name (and the attachment).
        path: Location of the encoded file.
        media_type: MIME type of the encoded bytes.
        size_bytes: Size of the encoded file.
        width: Pixel width after resizing.
        height: Pixel height after resizing.
    """

    attachment_id: str
    path: Path
    media_type: str
    size_bytes: int
    width: int
    height: int


def output_format(role: str | None) -> str:
    """Pick the encoder for a capture role."""
    return "PNG" if role == SIGNATURE_ROLE else "JPEG"


def fit_within(width: int, height: int, limit: int = MAX_DIMENSION) -> tuple[int, int]:
    """Scale dimensions down to fit ``limit`` keeping the aspect ratio."""
    scale = min(limit / width, limit / height, 1.0)
    return max(1, round(width * scale)), max(1, round(height * scale))


def prepare_image(
    source: Path | str,
    dest_dir: Path | str,
    role: str | None = None,
    attachment_id: str | None = None,
) -> PreparedMedia:
    """Re-encode a captured image into ``dest_dir``.

    Args:
        source: Original capture (any format Pillow can read).
        dest_dir: Directory receiving the prepared file.
        role: Capture role (before/after/signature/...); selects the encoder.
        attachment_id: Id to name the file after; generated if omitted.

    Returns:
        PreparedMedia describing the written file.

    Raises:
        FileNotFoundError: If the source does not exist.
        ValueError: If the source is not a readable image.
    """
    source = Path(source)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    attachment_id = attachment_id or generate_object_id()

    fmt = output_format(role)
    extension, media_type = _FORMATS[fmt]
    target = dest_dir / f"{attachment_id}.{extension}"

    try:
        with Image.open(source) as opened:
            image = ImageOps.exif_transpose(opened)
            size = fit_within(image.width, image.height)
            if size != (image.width, image.height):
                image = image.resize(size, Image.Resampling.LANCZOS)

            if fmt == "JPEG":
                if image.mode != "RGB":
                    image = image.convert("RGB")
                image.save(target, format=fmt, quality=JPEG_QUALITY, optimize=True)
            else:
                if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                    image = image.convert("RGBA")
                image.save(target, format=fmt, optimize=True)
            width, height = image.width, image.height
    except FileNotFoundError:
        raise
    except (UnidentifiedImageError, OSError) as e:
        # Truncated or partly written captures fail while decoding
        target.unlink(missing_ok=True)
        raise ValueError(f"Not an image: {source} ({e})") from e

    prepared = PreparedMedia(
        attachment_id=attachment_id,
        path=target,
        media_type=media_type,
        size_bytes=target.stat().st_size,
        width=width,
        height=height,
    )
    logger.debug(
        "Prepared %s -> %s (%s, %dx%d, %d bytes)",
        source,
        target,
        media_type,
        width,
        height,
        prepared.size_bytes,
    )
    return prepared


def detect_media_type(path: Path | str) -> str:
    """Derive a MIME type from the content of a file.

    Args:
        path: File to inspect.

    Returns:
        The MIME type of the encoded data, or ``application/octet-stream``
        when the data is not a recognized or complete image.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    try:
        with Image.open(path) as image:
            fmt = image.format
    except FileNotFoundError:
        raise
    except (UnidentifiedImageError, OSError):
        return OCTET_STREAM
    if fmt is None:
        return OCTET_STREAM
    return Image.MIME.get(fmt.upper(), OCTET_STREAM)
