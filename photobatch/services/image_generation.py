"""
Image generation service using OpenAI GPT-image-1.
Turns one prompt plus the product's reference images into one finished image file.
"""
import time
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from openai import OpenAI, OpenAIError
from PIL import Image

from shared.utils import parse_image_size
from photobatch.config import OPENAI_IMAGE_MODEL
from photobatch.errors import GenerationFailure
from photobatch.services.image_utils import (
    IMAGE_FORMATS, ImageFetchError, fetch_image_bytes, convert_image
)

logger = logging.getLogger(__name__)

# Sizes gpt-image-1 accepts; output is resized to the workflow size afterwards
API_SIZES = {
    "square": "1024x1024",
    "landscape": "1536x1024",
    "portrait": "1024x1536",
}

PRO_PROMPT_SUFFIX = (
    "Ultra high quality professional commercial photography, "
    "maximum detail, photorealistic textures, studio grade lighting."
)

ENGINE_QUALITY = {
    "standard": "medium",
    "pro": "high",
}

MAX_REFERENCE_IMAGES = 6


@dataclass
class GeneratedImage:
    data: bytes
    mime: str
    extension: str
    prompt: str


def api_size_for(width: int, height: int) -> str:
    """Pick the supported generation size closest to the target aspect ratio."""
    ratio = width / height
    if ratio > 1.2:
        return API_SIZES["landscape"]
    if ratio < 1 / 1.2:
        return API_SIZES["portrait"]
    return API_SIZES["square"]


class ImageGenerationService:
    def __init__(self, openai_client: OpenAI):
        self.client = openai_client
        self.model = OPENAI_IMAGE_MODEL

    def build_prompt(self, prompt: str, engine: str) -> str:
        if engine == "pro":
            return f"{prompt.rstrip()} {PRO_PROMPT_SUFFIX}"
        return prompt

    def generate(self, prompt: str, reference_image_urls: List[str], engine: str = "standard",
                 image_size: str = "1024x1024", image_format: str = "jpg") -> GeneratedImage:
        """
        Generate one image for a prompt.

        Args:
            prompt: Photography prompt for this slot
            reference_image_urls: Product images the model should stay faithful to (may be empty)
            engine: standard or pro
            image_size: Output WxH
            image_format: jpg, png or webp

        Returns:
            GeneratedImage: encoded output bytes

        Raises:
            GenerationFailure: when the model call fails or returns nothing usable
        """
        start_time = time.time()
        if image_format not in IMAGE_FORMATS:
            raise GenerationFailure(f"Unsupported image format {image_format}")
        try:
            width, height = parse_image_size(image_size)
        except ValueError as e:
            raise GenerationFailure(str(e)) from e

        references = self._load_references(reference_image_urls)
        full_prompt = self.build_prompt(prompt, engine)
        raw = self._call_image_model(full_prompt, references, api_size_for(width, height),
                                     ENGINE_QUALITY.get(engine, "medium"))

        try:
            data, mime = convert_image(raw, width, height, image_format)
        except ImageFetchError as e:
            raise GenerationFailure(f"Generated image could not be decoded: {e.message}") from e
        except (ValueError, OSError, Image.DecompressionBombError) as e:
            raise GenerationFailure(f"Generated image could not be converted: {str(e)}") from e

        logger.info(f"Generated {width}x{height} {image_format} image in {time.time() - start_time:.2f}s")
        return GeneratedImage(data=data, mime=mime, extension=image_format, prompt=prompt)

    def _load_references(self, urls: List[str]) -> List[Tuple[str, bytes, str]]:
        references = []
        for i, url in enumerate(urls[:MAX_REFERENCE_IMAGES]):
            try:
                data, mime = fetch_image_bytes(url)
            except ImageFetchError as e:
                raise GenerationFailure(f"Could not load reference image {i + 1}: {e.message}") from e
            extension = mime.split("/")[-1]
            references.append((f"reference_{i + 1}.{extension}", data, mime))
        return references

    def _call_image_model(self, prompt: str, references: List[Tuple[str, bytes, str]],
                          size: str, quality: str) -> bytes:
        try:
            if references:
                response = self.client.images.edit(
                    model=self.model,
                    image=references,
                    prompt=prompt,
                    size=size,
                    quality=quality
                )
            else:
                response = self.client.images.generate(
                    model=self.model,
                    prompt=prompt,
                    size=size,
                    quality=quality
                )
        except OpenAIError as e:
            logger.error(f"gpt-image-1 generation failed: {e}")
            raise GenerationFailure(f"Image model call failed: {str(e)}") from e

        if not response.data:
            raise GenerationFailure("Image model returned no data")

        # Get the image data (either base64 or URL)
        image_base64: Optional[str] = getattr(response.data[0], "b64_json", None)
        image_url: Optional[str] = getattr(response.data[0], "url", None)

        if image_base64:
            try:
                return base64.b64decode(image_base64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise GenerationFailure(f"Image model returned malformed base64 data: {str(e)}") from e
        if image_url:
            try:
                data, _ = fetch_image_bytes(image_url)
            except ImageFetchError as e:
                raise GenerationFailure(f"Could not download generated image: {e.message}") from e
            return data
        raise GenerationFailure("Image model returned neither image data nor URL")
