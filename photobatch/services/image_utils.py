"""
Image download and conversion helpers shared by the analysis and generation services.
Validates downloaded bytes with Pillow and re-encodes generated output to the workflow's selectors.
"""
import io
import base64
import logging
from typing import Tuple

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

from photobatch.config import IMAGE_FETCH_TIMEOUT
from photobatch.errors import PhotoBatchError

logger = logging.getLogger(__name__)

# workflow format -> (Pillow format, mime type)
IMAGE_FORMATS = {
    "jpg": ("JPEG", "image/jpeg"),
    "png": ("PNG", "image/png"),
    "webp": ("WEBP", "image/webp"),
}

OUTPUT_DPI = 300


class ImageFetchError(PhotoBatchError):
    status_code = 502


def fetch_image_bytes(url: str, timeout: int = IMAGE_FETCH_TIMEOUT) -> Tuple[bytes, str]:
    """
    Download an image and make sure it decodes.

    Returns:
        tuple: (raw bytes, mime type)

    Raises:
        ImageFetchError: on network failure, non-2xx status, non-image content or corrupt data
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.Timeout as e:
        raise ImageFetchError(f"Timeout downloading image: {url[:100]}") from e
    except requests.RequestException as e:
        raise ImageFetchError(f"Network error downloading image: {url[:100]}: {type(e).__name__}") from e

    if response.status_code >= 400:
        raise ImageFetchError(f"HTTP {response.status_code} downloading image: {url[:100]}")

    content_type = response.headers.get("content-type", "")
    if content_type and not content_type.startswith("image/"):
        raise ImageFetchError(f"Expected image content-type, got: {content_type}")

    data = response.content
    image = load_image(data)
    mime = Image.MIME.get(image.format, content_type or "image/jpeg")
    return data, mime


def load_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()  # Force full decode to catch truncation
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise ImageFetchError("Image data is corrupt or not a supported format") from e
    return image


def to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


def convert_image(data: bytes, width: int, height: int, image_format: str) -> Tuple[bytes, str]:
    """
    Cover-fit an image to width x height and encode it in the requested format at 300 DPI.

    Returns:
        tuple: (encoded bytes, mime type)
    """
    if image_format not in IMAGE_FORMATS:
        raise ValueError(f"Unsupported image format {image_format}")
    pil_format, mime = IMAGE_FORMATS[image_format]

    image = load_image(data)
    if image.size != (width, height):
        image = ImageOps.fit(image, (width, height), method=Image.Resampling.LANCZOS)

    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    save_kwargs = {"dpi": (OUTPUT_DPI, OUTPUT_DPI)}
    if pil_format in ("JPEG", "WEBP"):
        save_kwargs["quality"] = 95

    buffer = io.BytesIO()
    image.save(buffer, format=pil_format, **save_kwargs)
    return buffer.getvalue(), mime
