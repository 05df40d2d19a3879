from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from typing import List, Optional, Dict, Any, Union, Literal, Annotated
from datetime import datetime

from .utils import normalize_image_urls, parse_image_size


MAX_IMAGE_URLS = 6
VALID_IMAGE_FORMATS = ["jpg", "png", "webp"]
VALID_ENGINES = ["standard", "pro"]
DEFAULT_GLOBAL_PARAMS = "Create hyperrealistic product photography, respecting the original design 100%"


class GlobalPromptMode(BaseModel):
    """Every generated prompt is a variation on one shared requirement string."""
    mode: Literal["global"] = "global"
    params: Optional[str] = Field(None, description="Requirements applied to every image")

    def effective_params(self) -> str:
        if self.params and self.params.strip():
            return self.params.strip()
        return DEFAULT_GLOBAL_PARAMS


class SpecificPromptMode(BaseModel):
    """One user specification per output slot, adapted to the product in order."""
    mode: Literal["specific"] = "specific"
    prompts: List[str] = Field(..., min_length=1, description="One specification per image slot")


PromptMode = Annotated[Union[GlobalPromptMode, SpecificPromptMode], Field(discriminator="mode")]

prompt_mode_adapter = TypeAdapter(PromptMode)


def build_prompt_mode(mode: str, images_per_reference: int,
                      global_params: Optional[str] = None,
                      specific_prompts: Optional[List[str]] = None) -> Union[GlobalPromptMode, SpecificPromptMode]:
    """
    Build the tagged prompt mode from the flat wire fields.

    Raises:
        ValueError: if mode is unknown, or specific mode does not carry
            exactly images_per_reference specifications
    """
    if mode == "global":
        tagged = {"mode": "global", "params": global_params}
    elif mode == "specific":
        prompts = [p.strip() for p in (specific_prompts or [])]
        if len(prompts) != images_per_reference:
            raise ValueError(f"specificPrompts must have exactly {images_per_reference} elements")
        if any(not p for p in prompts):
            raise ValueError("specificPrompts must not contain empty entries")
        tagged = {"mode": "specific", "prompts": prompts}
    else:
        raise ValueError(f"mode must be 'global' or 'specific', got {mode!r}")
    return prompt_mode_adapter.validate_python(tagged)


class WorkflowItemInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(..., description="Catalog business key, e.g. SKU")
    asin: Optional[str] = Field(None, description="Marketplace identifier")
    product_name: Optional[str] = Field(None, alias="productName", description="Human readable product name")
    image_urls: List[str] = Field(..., alias="imageUrls", description="1-6 source image URLs")

    @field_validator('reference')
    @classmethod
    def validate_reference(cls, v):
        if not v or not v.strip():
            raise ValueError("reference must not be blank")
        return v.strip()

    @field_validator('image_urls')
    @classmethod
    def validate_image_urls(cls, v):
        return normalize_image_urls(v, max_urls=MAX_IMAGE_URLS)


class WorkflowSettings(BaseModel):
    """Fields shared by the create and update payloads."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255, description="Workflow name")
    project_id: Optional[str] = Field(None, alias="projectId", description="Target gallery project")
    mode: str = Field(default="global", description="Prompt mode: global or specific")
    images_per_reference: int = Field(..., alias="imagesPerReference", ge=1, description="Images generated per reference")
    global_params: Optional[str] = Field(None, alias="globalParams")
    specific_prompts: Optional[List[str]] = Field(None, alias="specificPrompts")
    image_size: str = Field(default="1024x1024", alias="imageSize")
    image_format: str = Field(default="jpg", alias="imageFormat")
    engine: str = Field(default="standard")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("name must not be blank")
        return v.strip()

    @field_validator('image_size')
    @classmethod
    def validate_size(cls, v):
        parse_image_size(v)
        return v

    @field_validator('image_format')
    @classmethod
    def validate_format(cls, v):
        v = v.lower()
        if v == "jpeg":
            v = "jpg"
        if v not in VALID_IMAGE_FORMATS:
            raise ValueError(f"Format must be one of {VALID_IMAGE_FORMATS}")
        return v

    @field_validator('engine')
    @classmethod
    def validate_engine(cls, v):
        if v not in VALID_ENGINES:
            raise ValueError(f"Engine must be one of {VALID_ENGINES}")
        return v

    @model_validator(mode='after')
    def validate_prompt_mode(self):
        self.prompt_mode()
        return self

    def prompt_mode(self) -> Union[GlobalPromptMode, SpecificPromptMode]:
        return build_prompt_mode(self.mode, self.images_per_reference,
                                 self.global_params, self.specific_prompts)


class CreateWorkflowRequest(WorkflowSettings):
    project_id: str = Field(..., alias="projectId", description="Target gallery project")
    items: List[WorkflowItemInput] = Field(..., min_length=1, description="Catalog references to process")

    @field_validator('project_id')
    @classmethod
    def validate_project_id(cls, v):
        if not v or not v.strip():
            raise ValueError("projectId is required")
        return v.strip()


class UpdateWorkflowRequest(WorkflowSettings):
    workflow_id: str = Field(..., alias="workflowId")
    items: Optional[List[WorkflowItemInput]] = Field(None, description="Replacement item set")

    @field_validator('items')
    @classmethod
    def validate_items(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError("items must contain at least one reference when supplied")
        return v


class WorkflowIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field(..., alias="workflowId", min_length=1)


class ProcessItemRequest(WorkflowIdRequest):
    item_id: str = Field(..., alias="itemId", min_length=1)


class ProductAnalysis(BaseModel):
    """Classification and prompt set returned by the analysis capability."""
    product_type: str = Field(..., description="Detected product type")
    description: Optional[str] = Field(None, description="Brief product description")
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    prompts: List[str] = Field(..., description="One photography prompt per image slot")


class GeneratedImageResult(BaseModel):
    url: str = Field(..., description="Where the generated image can be fetched")
    prompt: str = Field(..., description="Prompt used for this image")
    index: int = Field(..., ge=1, description="1-based slot in the prompt list")


class ItemResult(BaseModel):
    reference: str
    status: Literal["success", "failed"]
    images_generated: int = 0
    error: Optional[str] = None


class BatchSummary(BaseModel):
    workflow_id: str
    total: int
    success_count: int
    failed_count: int
    results: List[ItemResult] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_response(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success_count,
            "failed": self.failed_count,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "results": [r.model_dump(exclude_none=True) for r in self.results],
        }


class RetryFailedResult(BaseModel):
    retried_count: int
    failed_references: List[Dict[str, Any]] = Field(default_factory=list)
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    database: bool = Field(..., description="Whether the job store answered")
    openai_configured: bool = Field(..., description="Whether an OpenAI key is configured")
    version: str = Field(default="1.0.0", description="API version")
    timestamp: datetime = Field(default_factory=datetime.now)
