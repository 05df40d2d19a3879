"""
Shared utilities for the product photo batch engine
"""

import re
from typing import List, Optional, Tuple
from urllib.parse import urlparse


MIN_IMAGE_SIDE = 256
MAX_IMAGE_SIDE = 4096

_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def is_valid_http_url(value: str) -> bool:
    """
    Check whether a string is an absolute http(s) URL.

    Args:
        value: Candidate URL

    Returns:
        bool: True for http/https URLs with a host
    """
    try:
        parsed = urlparse(value)
    except (TypeError, ValueError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def normalize_image_urls(urls: List[str], max_urls: int = 6) -> List[str]:
    """
    Strip, validate and dedupe source image URLs, keeping their order.

    Raises:
        ValueError: if no URL remains, one is not http(s), or there are more than max_urls
    """
    cleaned = []
    for raw in urls or []:
        url = (raw or "").strip()
        if not url:
            continue
        if not is_valid_http_url(url):
            raise ValueError(f"Invalid image URL: {url[:100]}")
        if url not in cleaned:
            cleaned.append(url)

    if not cleaned:
        raise ValueError("At least one image URL is required")
    if len(cleaned) > max_urls:
        raise ValueError(f"At most {max_urls} image URLs are allowed, got {len(cleaned)}")
    return cleaned


def parse_image_size(size: str) -> Tuple[int, int]:
    """
    Parse a "WIDTHxHEIGHT" selector.

    Raises:
        ValueError: if malformed or out of bounds
    """
    match = re.fullmatch(r"\s*(\d+)\s*[xX]\s*(\d+)\s*", size or "")
    if not match:
        raise ValueError(f"Size must look like 1024x1024, got {size!r}")
    width, height = int(match.group(1)), int(match.group(2))
    for side in (width, height):
        if side < MIN_IMAGE_SIDE or side > MAX_IMAGE_SIDE:
            raise ValueError(f"Size sides must be between {MIN_IMAGE_SIDE} and {MAX_IMAGE_SIDE}")
    return width, height


def build_image_filename(reference: str, index: int, extension: str, asin: Optional[str] = None) -> str:
    """Gallery filename for one generated slot, e.g. SKU-1_B0XX_2.jpg"""
    parts = [_FILENAME_UNSAFE.sub("-", reference).strip("-") or "ref"]
    if asin:
        parts.append(_FILENAME_UNSAFE.sub("-", asin).strip("-"))
    parts.append(str(index))
    return f"{'_'.join(p for p in parts if p)}.{extension.lstrip('.')}"


def truncate_text(text: str, max_length: int = 100) -> str:
    """
    Truncate text to specified length with ellipsis.

    Args:
        text: Text to truncate
        max_length: Maximum length

    Returns:
        Truncated text with ellipsis if needed
    """
    if len(text) <= max_length:
        return text
    return text[:max_length-3] + "..."
