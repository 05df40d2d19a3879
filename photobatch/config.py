"""
Configuration helper for the FastAPI app.
Reads environment variables, with a local .env file loaded for development.
"""
import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

if os.getenv("ENVIRONMENT", "development").lower() != "production":
    load_dotenv()


def get_config(key: str, default: Optional[Any] = None) -> Optional[Any]:
    """
    Get configuration value from the environment.

    Args:
        key: Configuration key to retrieve
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return value


def get_int_config(key: str, default: int) -> int:
    try:
        return int(get_config(key, default))
    except (TypeError, ValueError):
        logger.warning(f"Invalid integer for {key}, using default {default}")
        return default


def get_float_config(key: str, default: float) -> float:
    try:
        return float(get_config(key, default))
    except (TypeError, ValueError):
        logger.warning(f"Invalid float for {key}, using default {default}")
        return default


# Export commonly used configuration values as constants
ENVIRONMENT = get_config("ENVIRONMENT", "development")
DATABASE_URL = get_config("DATABASE_URL", "sqlite:///./photobatch.db")
OPENAI_API_KEY = get_config("OPENAI_API_KEY")
OPENAI_VISION_MODEL = get_config("OPENAI_VISION_MODEL", "gpt-4o")
OPENAI_VISION_MAX_TOKENS = get_int_config("OPENAI_VISION_MAX_TOKENS", 4000)
OPENAI_VISION_TEMPERATURE = get_float_config("OPENAI_VISION_TEMPERATURE", 0.7)
OPENAI_IMAGE_MODEL = get_config("OPENAI_IMAGE_MODEL", "gpt-image-1")
IMAGE_FETCH_TIMEOUT = get_int_config("IMAGE_FETCH_TIMEOUT", 30)
STORAGE_LOCAL_PATH = get_config("STORAGE_LOCAL_PATH", "./media")
# Where the app serves STORAGE_LOCAL_PATH; always a path
MEDIA_MOUNT_PATH = "/" + get_config("MEDIA_MOUNT_PATH", "/media").strip("/")
# Prefix of public image URLs; a path on this app or an absolute CDN URL
MEDIA_BASE_URL = get_config("MEDIA_BASE_URL", MEDIA_MOUNT_PATH).rstrip("/")
LOG_LEVEL = get_config("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = get_config("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
APP_NAME = get_config("APP_NAME", "Product Photo Batch API")
APP_VERSION = get_config("APP_VERSION", "1.0.0")
APP_DESCRIPTION = get_config("APP_DESCRIPTION", "Batch workflow engine for AI product photography")
CORS_ORIGINS = get_config("CORS_ORIGINS", "*")
API_HOST = get_config("API_HOST", "0.0.0.0")
API_PORT = get_int_config("API_PORT", 8000)
