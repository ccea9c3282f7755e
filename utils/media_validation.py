"""Helpers for working out what kind of image a downloaded artifact is."""

import io
from typing import Optional

from PIL import Image, UnidentifiedImageError

DEFAULT_CONTENT_TYPE = "image/png"

PIL_FORMAT_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def extension_for_content_type(content_type: str) -> str:
    """Return the file extension used for an image content type.

    Unknown types map to `.png`, which is what the execution engine emits by default.
    """
    content_type = (content_type or "").lower()
    if "jpeg" in content_type or "jpg" in content_type:
        return ".jpg"
    if "webp" in content_type:
        return ".webp"
    if "gif" in content_type:
        return ".gif"
    return ".png"


def sniff_content_type(data: bytes) -> Optional[str]:
    """Identify image bytes with Pillow, returning a MIME type or None."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError):
        return None
    return PIL_FORMAT_TYPES.get(image_format or "")


def resolve_content_type(header_value: Optional[str], data: bytes) -> str:
    """Pick the content type for an artifact.

    The response header wins when it names an image type. Otherwise the bytes
    are sniffed, and `image/png` is the last resort.
    """
    header = (header_value or "").split(";", 1)[0].strip().lower()
    if header.startswith("image/"):
        return header
    return sniff_content_type(data) or DEFAULT_CONTENT_TYPE
