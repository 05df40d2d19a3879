"""Tests for the OpenAI Vision analysis service."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from openai import OpenAIError

from shared.workflow import GlobalPromptMode, SpecificPromptMode, DEFAULT_GLOBAL_PARAMS
from photobatch.errors import AnalysisFailure, AnalysisMismatchError
from photobatch.services.product_analysis import ProductAnalysisService

IMAGE_URL = "https://cdn.example.com/lamp.png"


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _answer(prompts, **extra):
    payload = {"product_type": "floor lamp", "description": "Brass floor lamp", "confidence": 0.88}
    payload.update(extra)
    payload["prompts"] = prompts
    return json.dumps(payload)


@pytest.fixture
def openai_client():
    return MagicMock()


@pytest.fixture
def service(openai_client):
    return ProductAnalysisService(openai_client)


@pytest.fixture
def served_image(fake_http, make_image):
    fake_http(IMAGE_URL, make_image())
    return IMAGE_URL


class TestAnalyze:

    def test_returns_prompts_in_order(self, service, openai_client, served_image):
        openai_client.chat.completions.create.return_value = _completion(_answer(["first", "second"]))

        analysis = service.analyze("Brass Lamp", served_image, GlobalPromptMode(), 2)

        assert analysis.product_type == "floor lamp"
        assert analysis.description == "Brass floor lamp"
        assert analysis.confidence == pytest.approx(0.88)
        assert analysis.prompts == ["first", "second"]

    def test_sends_image_as_data_url(self, service, openai_client, served_image):
        openai_client.chat.completions.create.return_value = _completion(_answer(["only"]))

        service.analyze("Brass Lamp", served_image, GlobalPromptMode(), 1)

        kwargs = openai_client.chat.completions.create.call_args.kwargs
        content = kwargs["messages"][0]["content"]
        assert content[0]["type"] == "text"
        assert "Name: Brass Lamp" in content[0]["text"]
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    def test_wrong_prompt_count_is_mismatch(self, service, openai_client, served_image):
        openai_client.chat.completions.create.return_value = _completion(_answer(["a", "b", "c"]))

        with pytest.raises(AnalysisMismatchError) as exc_info:
            service.analyze(None, served_image, GlobalPromptMode(), 2)

        assert exc_info.value.message == "Generated 3 prompts but expected 2"
        assert exc_info.value.expected == 2
        assert exc_info.value.received == 3

    def test_api_error_is_analysis_failure(self, service, openai_client, served_image):
        openai_client.chat.completions.create.side_effect = OpenAIError("rate limited")

        with pytest.raises(AnalysisFailure, match="Vision API call failed"):
            service.analyze(None, served_image, GlobalPromptMode(), 1)

    def test_empty_answer_is_analysis_failure(self, service, openai_client, served_image):
        openai_client.chat.completions.create.return_value = _completion("")

        with pytest.raises(AnalysisFailure, match="empty response"):
            service.analyze(None, served_image, GlobalPromptMode(), 1)

    def test_unreachable_image_skips_model(self, service, openai_client, fake_http):
        fake_http(IMAGE_URL, requests.ConnectionError("refused"))

        with pytest.raises(AnalysisFailure, match="Could not load reference image"):
            service.analyze(None, IMAGE_URL, GlobalPromptMode(), 1)

        openai_client.chat.completions.create.assert_not_called()

    def test_non_image_content_rejected(self, service, fake_http):
        fake_http(IMAGE_URL, b"<html></html>", content_type="text/html")

        with pytest.raises(AnalysisFailure, match="Expected image content-type"):
            service.analyze(None, IMAGE_URL, GlobalPromptMode(), 1)

    def test_http_error_status_rejected(self, service, fake_http):
        fake_http(IMAGE_URL, b"", status_code=403)

        with pytest.raises(AnalysisFailure, match="HTTP 403"):
            service.analyze(None, IMAGE_URL, GlobalPromptMode(), 1)


class TestMasterPrompt:

    def test_global_mode_uses_default_requirements(self, service):
        prompt = service.build_master_prompt(None, GlobalPromptMode(params="  "), 3)

        assert DEFAULT_GLOBAL_PARAMS in prompt
        assert "Name: Not provided" in prompt
        assert "Generate EXACTLY 3 prompts" in prompt

    def test_specific_mode_lists_specifications_in_order(self, service):
        mode = SpecificPromptMode(prompts=["white background", "in a living room"])

        prompt = service.build_master_prompt("Brass Lamp", mode, 2)

        assert "1. white background\n2. in a living room" in prompt
        assert "Maintain the ORDER of specifications" in prompt


class TestParseAnalysis:

    def test_strips_markdown_fences(self, service):
        text = "```json\n" + _answer(["one"]) + "\n```"

        analysis = service.parse_analysis(text, 1)

        assert analysis.prompts == ["one"]

    def test_invalid_json(self, service):
        with pytest.raises(AnalysisFailure, match="JSON parsing failed"):
            service.parse_analysis("not json at all", 1)

    def test_non_object_payload(self, service):
        with pytest.raises(AnalysisFailure, match="Invalid analysis payload type"):
            service.parse_analysis("[1, 2]", 2)

    def test_missing_prompts_is_mismatch(self, service):
        with pytest.raises(AnalysisMismatchError):
            service.parse_analysis(json.dumps({"product_type": "lamp"}), 2)

    def test_confidence_defaults_and_clamps(self, service):
        assert service.parse_analysis(json.dumps({"prompts": ["a"]}), 1).confidence == pytest.approx(0.9)
        assert service.parse_analysis(_answer(["a"], confidence=7), 1).confidence == pytest.approx(1.0)
        assert service.parse_analysis(_answer(["a"], confidence="high"), 1).confidence == pytest.approx(0.9)

    def test_missing_product_type_is_unknown(self, service):
        assert service.parse_analysis(json.dumps({"prompts": ["a"]}), 1).product_type == "unknown"
