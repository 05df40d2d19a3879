"""Tests for request schemas, prompt modes and shared helpers."""

import pytest
from pydantic import ValidationError

from shared.utils import (
    is_valid_http_url, normalize_image_urls, parse_image_size, build_image_filename, truncate_text
)
from shared.workflow import (
    CreateWorkflowRequest, UpdateWorkflowRequest, GlobalPromptMode, SpecificPromptMode,
    BatchSummary, ItemResult, build_prompt_mode, prompt_mode_adapter, DEFAULT_GLOBAL_PARAMS
)


def _create_payload(**overrides):
    payload = {
        "name": "Catalog",
        "projectId": "project-1",
        "imagesPerReference": 2,
        "items": [{"reference": "SKU-1", "imageUrls": ["https://cdn.example.com/a.jpg"]}],
    }
    payload.update(overrides)
    return payload


class TestUtils:

    @pytest.mark.parametrize("value,expected", [
        ("https://cdn.example.com/a.jpg", True),
        ("http://localhost:8000/a.png", True),
        ("ftp://cdn.example.com/a.jpg", False),
        ("not a url", False),
        ("https://", False),
    ])
    def test_is_valid_http_url(self, value, expected):
        assert is_valid_http_url(value) is expected

    def test_normalize_image_urls_strips_and_dedupes(self):
        urls = [" https://a.example.com/1.jpg ", "", "https://a.example.com/1.jpg", "https://a.example.com/2.jpg"]
        assert normalize_image_urls(urls) == ["https://a.example.com/1.jpg", "https://a.example.com/2.jpg"]

    def test_normalize_image_urls_limits(self):
        with pytest.raises(ValueError, match="At least one image URL"):
            normalize_image_urls(["  "])
        with pytest.raises(ValueError, match="At most 2"):
            normalize_image_urls([f"https://a.example.com/{i}.jpg" for i in range(3)], max_urls=2)

    def test_parse_image_size(self):
        assert parse_image_size("1024x1536") == (1024, 1536)
        assert parse_image_size(" 2000X2000 ") == (2000, 2000)
        with pytest.raises(ValueError):
            parse_image_size("big")
        with pytest.raises(ValueError):
            parse_image_size("100x100")

    def test_build_image_filename(self):
        assert build_image_filename("SKU-1", 2, "jpg", "B0ABC") == "SKU-1_B0ABC_2.jpg"
        assert build_image_filename("SKU 1/red", 1, ".png") == "SKU-1-red_1.png"

    def test_truncate_text(self):
        assert truncate_text("short", 10) == "short"
        assert len(truncate_text("x" * 50, 10)) <= 10


class TestPromptMode:

    def test_global_mode_falls_back_to_default(self):
        mode = build_prompt_mode("global", 3)
        assert isinstance(mode, GlobalPromptMode)
        assert mode.effective_params() == DEFAULT_GLOBAL_PARAMS

    def test_specific_mode_requires_one_prompt_per_image(self):
        mode = build_prompt_mode("specific", 2, specific_prompts=[" studio ", "outdoor"])
        assert isinstance(mode, SpecificPromptMode)
        assert mode.prompts == ["studio", "outdoor"]

        with pytest.raises(ValueError, match="exactly 3 elements"):
            build_prompt_mode("specific", 3, specific_prompts=["studio", "outdoor"])

    def test_specific_mode_rejects_blank_entries(self):
        with pytest.raises(ValueError, match="empty entries"):
            build_prompt_mode("specific", 2, specific_prompts=["studio", "  "])

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="mode must be"):
            build_prompt_mode("random", 1)

    def test_discriminated_union_routes_on_mode_tag(self):
        specific = prompt_mode_adapter.validate_python({"mode": "specific", "prompts": ["studio"]})
        global_mode = prompt_mode_adapter.validate_python({"mode": "global"})

        assert isinstance(specific, SpecificPromptMode)
        assert isinstance(global_mode, GlobalPromptMode)
        assert global_mode.params is None

    @pytest.mark.parametrize("tagged", [
        {"mode": "random"},
        {"prompts": ["studio"]},
        {"mode": "specific", "prompts": []},
    ])
    def test_discriminated_union_rejects_bad_tags(self, tagged):
        with pytest.raises(ValidationError):
            prompt_mode_adapter.validate_python(tagged)


class TestRequests:

    def test_create_defaults(self):
        request = CreateWorkflowRequest.model_validate(_create_payload())
        assert request.mode == "global"
        assert request.image_size == "1024x1024"
        assert request.image_format == "jpg"
        assert request.engine == "standard"
        assert request.items[0].product_name is None

    def test_jpeg_is_normalized(self):
        request = CreateWorkflowRequest.model_validate(_create_payload(imageFormat="JPEG"))
        assert request.image_format == "jpg"

    @pytest.mark.parametrize("overrides", [
        {"items": []},
        {"imagesPerReference": 0},
        {"projectId": "  "},
        {"engine": "turbo"},
        {"imageFormat": "gif"},
        {"imageSize": "10x10"},
        {"items": [{"reference": "SKU-1", "imageUrls": ["file:///etc/passwd"]}]},
        {"items": [{"reference": " ", "imageUrls": ["https://cdn.example.com/a.jpg"]}]},
    ])
    def test_create_rejects(self, overrides):
        with pytest.raises(ValidationError):
            CreateWorkflowRequest.model_validate(_create_payload(**overrides))

    def test_update_tracks_supplied_selectors(self):
        request = UpdateWorkflowRequest.model_validate({
            "workflowId": "wf-1", "name": "Catalog", "imagesPerReference": 1, "engine": "pro",
        })
        assert "engine" in request.model_fields_set
        assert "image_size" not in request.model_fields_set
        assert request.items is None

    def test_update_rejects_empty_item_list(self):
        with pytest.raises(ValidationError):
            UpdateWorkflowRequest.model_validate({
                "workflowId": "wf-1", "name": "Catalog", "imagesPerReference": 1, "items": [],
            })


class TestBatchSummary:

    def test_to_response_has_both_counter_spellings(self):
        summary = BatchSummary(
            workflow_id="wf-1", total=2, success_count=1, failed_count=1,
            results=[
                ItemResult(reference="SKU-1", status="success", images_generated=2),
                ItemResult(reference="SKU-2", status="failed", error="Vision API call failed"),
            ],
        )

        response = summary.to_response()

        assert response["success"] == response["success_count"] == 1
        assert response["failed"] == response["failed_count"] == 1
        assert response["results"][0] == {"reference": "SKU-1", "status": "success", "images_generated": 2}
        assert response["results"][1]["error"] == "Vision API call failed"
