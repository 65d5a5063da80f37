"""Image format helpers: MIME tables, base64 decoding and Pillow sniffing."""
from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .errors import ProviderResponseError
from .models import GenerationResult

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/png"

# Output formats the provider can return
RECOGNIZED_FORMATS = ("png", "jpeg", "webp")

EXT_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


def infer_extension(output_format: str = "png") -> str:
    """Get file extension from an output format or MIME type."""
    fmt = output_format.lower()
    if fmt.startswith("image/"):
        fmt = fmt[len("image/"):]
    mapping = {
        "png": ".png",
        "jpeg": ".jpg",
        "jpg": ".jpg",
        "webp": ".webp",
    }
    return mapping.get(fmt, ".png")


def mime_type_for(path: "Path | str") -> Optional[str]:
    """Return the image MIME type for a file name, or None if it is not an image."""
    return EXT_TO_MIME.get(Path(str(path)).suffix.lower())


def is_image_name(path: "Path | str") -> bool:
    return mime_type_for(path) is not None


def detect_image_format(buffer: bytes) -> str:
    """Identify image bytes with Pillow and return a lowercase format name.

    Raises:
        ValueError: If Pillow cannot identify the data as an image.
    """
    try:
        with Image.open(io.BytesIO(buffer)) as im:
            fmt = im.format
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Unable to identify image data: {exc}") from exc
    if not fmt:
        raise ValueError("Unable to identify image data.")
    return fmt.lower()


def decode_generation_result(base64_image: Optional[str], output_format: str) -> GenerationResult:
    """Turn a provider base64 payload into a complete GenerationResult.

    The result is only returned once the bytes are non-empty and Pillow
    recognizes them as one of RECOGNIZED_FORMATS. If the detected format
    differs from the requested one, the detected format is kept.
    """
    if not base64_image:
        raise ProviderResponseError("Provider response did not include image data.")
    try:
        buffer = base64.b64decode(base64_image, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProviderResponseError(f"Unable to decode image data: {exc}") from exc
    if not buffer:
        raise ProviderResponseError("Provider returned an empty image.")

    try:
        detected = detect_image_format(buffer)
    except ValueError as exc:
        raise ProviderResponseError(str(exc)) from exc
    if detected not in RECOGNIZED_FORMATS:
        raise ProviderResponseError(
            f"Unsupported image format '{detected}'. Supported: {', '.join(RECOGNIZED_FORMATS)}"
        )
    if detected != output_format:
        logger.warning("Requested %s output but provider returned %s", output_format, detected)
    return GenerationResult(buffer=buffer, output_format=detected)
