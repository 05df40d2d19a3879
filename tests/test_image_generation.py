"""Tests for the gpt-image-1 generation service and image conversion."""

import base64
import io
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from openai import OpenAIError
from PIL import Image

from photobatch.errors import GenerationFailure
from photobatch.services.image_generation import (
    ImageGenerationService, PRO_PROMPT_SUFFIX, api_size_for
)
from photobatch.services.image_utils import convert_image

REFERENCE_URL = "https://cdn.example.com/lamp.png"


def _image_response(b64=None, url=None):
    return SimpleNamespace(data=[SimpleNamespace(b64_json=b64, url=url)])


@pytest.fixture
def openai_client(make_image):
    client = MagicMock()
    encoded = base64.b64encode(make_image(1024, 1024)).decode("utf-8")
    client.images.edit.return_value = _image_response(b64=encoded)
    client.images.generate.return_value = _image_response(b64=encoded)
    return client


@pytest.fixture
def service(openai_client):
    return ImageGenerationService(openai_client)


@pytest.fixture
def reference(fake_http, make_image):
    fake_http(REFERENCE_URL, make_image())
    return REFERENCE_URL


class TestGenerate:

    def test_references_use_edit_endpoint(self, service, openai_client, reference):
        image = service.generate("lamp on a desk", [reference])

        openai_client.images.generate.assert_not_called()
        kwargs = openai_client.images.edit.call_args.kwargs
        name, data, mime = kwargs["image"][0]
        assert name == "reference_1.png"
        assert mime == "image/png"
        assert kwargs["prompt"] == "lamp on a desk"
        assert kwargs["size"] == "1024x1024"
        assert kwargs["quality"] == "medium"
        assert image.prompt == "lamp on a desk"
        assert image.extension == "jpg"
        assert image.mime == "image/jpeg"

    def test_without_references_uses_generate_endpoint(self, service, openai_client):
        service.generate("lamp on a desk", [])

        openai_client.images.edit.assert_not_called()
        openai_client.images.generate.assert_called_once()

    def test_pro_engine_raises_quality(self, service, openai_client):
        service.generate("lamp on a desk", [], engine="pro")

        kwargs = openai_client.images.generate.call_args.kwargs
        assert kwargs["quality"] == "high"
        assert kwargs["prompt"] == f"lamp on a desk {PRO_PROMPT_SUFFIX}"

    def test_output_matches_size_and_format(self, service):
        image = service.generate("lamp", [], image_size="2000x1000", image_format="png")

        decoded = Image.open(io.BytesIO(image.data))
        assert decoded.format == "PNG"
        assert decoded.size == (2000, 1000)
        assert image.mime == "image/png"

    def test_url_result_is_downloaded(self, service, openai_client, fake_http, make_image):
        generated_url = "https://files.example.com/generated.png"
        fake_http(generated_url, make_image(1024, 1024))
        openai_client.images.generate.return_value = _image_response(url=generated_url)

        image = service.generate("lamp", [], image_format="webp")

        assert Image.open(io.BytesIO(image.data)).format == "WEBP"
        assert generated_url in fake_http.requested

    def test_api_error_is_generation_failure(self, service, openai_client):
        openai_client.images.generate.side_effect = OpenAIError("content policy")

        with pytest.raises(GenerationFailure, match="Image model call failed"):
            service.generate("lamp", [])

    def test_empty_result_is_generation_failure(self, service, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(data=[])

        with pytest.raises(GenerationFailure, match="no data"):
            service.generate("lamp", [])

    def test_unreachable_reference_is_generation_failure(self, service, openai_client, fake_http):
        with pytest.raises(GenerationFailure, match="Could not load reference image 1"):
            service.generate("lamp", ["https://cdn.example.com/missing.png"])

        openai_client.images.edit.assert_not_called()

    @pytest.mark.parametrize("payload", ["abc", "not base64 at all!"])
    def test_malformed_base64_is_generation_failure(self, service, openai_client, payload):
        openai_client.images.generate.return_value = _image_response(b64=payload)

        with pytest.raises(GenerationFailure, match="malformed base64"):
            service.generate("lamp", [])

    def test_undecodable_image_is_generation_failure(self, service, openai_client):
        encoded = base64.b64encode(b"definitely not an image").decode("utf-8")
        openai_client.images.generate.return_value = _image_response(b64=encoded)

        with pytest.raises(GenerationFailure, match="could not be decoded"):
            service.generate("lamp", [])

    @pytest.mark.parametrize("error", [
        ValueError("cannot write mode P as JPEG"),
        OSError("encoder error -2"),
        Image.DecompressionBombError("too many pixels"),
    ])
    def test_conversion_errors_are_generation_failure(self, service, monkeypatch, error):
        def failing_convert(*args, **kwargs):
            raise error

        monkeypatch.setattr("photobatch.services.image_generation.convert_image", failing_convert)

        with pytest.raises(GenerationFailure, match="could not be converted"):
            service.generate("lamp", [])

    def test_bad_size_is_generation_failure(self, service, openai_client):
        with pytest.raises(GenerationFailure, match="Size"):
            service.generate("lamp", [], image_size="huge")

        openai_client.images.generate.assert_not_called()

    def test_unknown_format_rejected(self, service):
        with pytest.raises(GenerationFailure, match="Unsupported image format"):
            service.generate("lamp", [], image_format="gif")


class TestSizing:

    @pytest.mark.parametrize("width,height,expected", [
        (1024, 1024, "1024x1024"),
        (2000, 2000, "1024x1024"),
        (1100, 1000, "1024x1024"),
        (1920, 1080, "1536x1024"),
        (1080, 1920, "1024x1536"),
    ])
    def test_api_size_for(self, width, height, expected):
        assert api_size_for(width, height) == expected

    def test_convert_image_sets_dpi(self, make_image):
        data, mime = convert_image(make_image(300, 200), 400, 400, "jpg")

        decoded = Image.open(io.BytesIO(data))
        assert mime == "image/jpeg"
        assert decoded.size == (400, 400)
        assert round(decoded.info["dpi"][0]) == 300
