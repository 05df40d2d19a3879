"""
Product analysis service using OpenAI Vision.
Classifies a product from its reference image and writes one photography prompt per output slot.
"""
import json
import time
import logging
from typing import Optional, Union, Dict, Any

from openai import OpenAI, OpenAIError

from shared.workflow import GlobalPromptMode, SpecificPromptMode, ProductAnalysis
from photobatch.config import OPENAI_VISION_MODEL, OPENAI_VISION_MAX_TOKENS, OPENAI_VISION_TEMPERATURE
from photobatch.errors import AnalysisFailure, AnalysisMismatchError
from photobatch.services.image_utils import ImageFetchError, fetch_image_bytes, to_data_url

logger = logging.getLogger(__name__)


class ProductAnalysisService:
    def __init__(self, openai_client: OpenAI):
        self.client = openai_client
        self.model = OPENAI_VISION_MODEL
        self.max_tokens = OPENAI_VISION_MAX_TOKENS
        self.temperature = OPENAI_VISION_TEMPERATURE

    def analyze(self, product_name: Optional[str], image_url: str,
                prompt_mode: Union[GlobalPromptMode, SpecificPromptMode], count: int) -> ProductAnalysis:
        """
        Analyze a product image and produce exactly `count` photography prompts.

        Args:
            product_name: Optional human readable product name
            image_url: Reference image of the product
            prompt_mode: Global requirements or per-slot specifications
            count: Number of prompts to produce

        Returns:
            ProductAnalysis: detected type, description, confidence and prompts

        Raises:
            AnalysisFailure: image could not be fetched, model call or JSON parsing failed
            AnalysisMismatchError: the model returned a different number of prompts
        """
        start_time = time.time()

        try:
            image_data, mime = fetch_image_bytes(image_url)
        except ImageFetchError as e:
            raise AnalysisFailure(f"Could not load reference image: {e.message}") from e

        master_prompt = self.build_master_prompt(product_name, prompt_mode, count)
        raw = self._call_vision(master_prompt, to_data_url(image_data, mime))
        analysis = self.parse_analysis(raw, count)

        logger.info(
            f"Analysis produced {len(analysis.prompts)} prompts for '{analysis.product_type}' "
            f"in {time.time() - start_time:.2f}s"
        )
        return analysis

    def build_master_prompt(self, product_name: Optional[str],
                            prompt_mode: Union[GlobalPromptMode, SpecificPromptMode], count: int) -> str:
        product_line = f"Name: {product_name}" if product_name else "Name: Not provided"
        example_prompts = ",\n".join(f'    "Prompt {i + 1}: detailed prompt here..."' for i in range(count))

        if isinstance(prompt_mode, SpecificPromptMode):
            spec_list = "\n".join(f"{i + 1}. {spec}" for i, spec in enumerate(prompt_mode.prompts))
            return f"""You are an expert product photographer and prompt engineer.

TASK: Analyze this product and adapt {count} user-specified requirements into professional prompts.

PRODUCT INFO:
{product_line}

USER'S SPECIFIC REQUIREMENTS (one per image):
{spec_list}

YOUR JOB:
1. IDENTIFY what type of product this is (be very specific)
2. For EACH of the {count} specifications above:
   - ADAPT it to this specific product type
   - Make it professional and detailed
   - Preserve the user's intent but make it product-appropriate
   - Add technical photography details

RESPOND IN THIS EXACT JSON FORMAT:
{{
  "product_type": "specific product type",
  "description": "brief description",
  "confidence": 0.95,
  "prompts": [
{example_prompts}
  ]
}}

CRITICAL:
- Generate EXACTLY {count} prompts
- Each prompt MUST correspond to its user specification
- Maintain the ORDER of specifications
Return ONLY the JSON object, no additional text or markdown formatting."""

        return f"""You are an expert product photographer and prompt engineer.

TASK: Analyze this product and generate {count} specialized photography prompts.

PRODUCT INFO:
{product_line}

USER'S GLOBAL REQUIREMENTS (apply to ALL {count} images):
{prompt_mode.effective_params()}

YOUR JOB:
1. IDENTIFY what type of product this is (be very specific)
2. GENERATE {count} UNIQUE prompts that:
   - Are tailored specifically for THIS type of product
   - Incorporate the user's global requirements in ALL prompts
   - Show the product in {count} DIFFERENT realistic scenarios
   - Vary in composition, lighting, angle, and context

RESPOND IN THIS EXACT JSON FORMAT:
{{
  "product_type": "specific product type",
  "description": "brief description",
  "confidence": 0.95,
  "prompts": [
{example_prompts}
  ]
}}

CRITICAL: Generate EXACTLY {count} prompts, each one UNIQUE.
Return ONLY the JSON object, no additional text or markdown formatting."""

    def _call_vision(self, prompt: str, image_data_url: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "text",
                                "text": prompt
                            },
                            {
                                "type": "image_url",
                                "image_url": {
                                    "url": image_data_url
                                }
                            }
                        ]
                    }
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature
            )
        except OpenAIError as e:
            logger.error(f"Error calling OpenAI Vision API: {e}")
            raise AnalysisFailure(f"Vision API call failed: {str(e)}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalysisFailure("Vision API returned an empty response")
        return content

    @staticmethod
    def strip_code_fences(response_text: str) -> str:
        text = response_text.strip()
        if "```json" in text:
            text = text.split("```json", 1)[1].split("```", 1)[0]
        elif "```" in text:
            text = text.split("```", 1)[1].split("```", 1)[0]
        return text.strip()

    def parse_analysis(self, response_text: str, count: int) -> ProductAnalysis:
        """
        Parse and validate the model's JSON answer.
        """
        json_text = self.strip_code_fences(response_text)
        try:
            data: Dict[str, Any] = json.loads(json_text)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing JSON response: {e}")
            logger.debug(f"Raw response: {response_text}")
            raise AnalysisFailure(f"JSON parsing failed: {str(e)}") from e

        if not isinstance(data, dict):
            raise AnalysisFailure(f"Invalid analysis payload type: {type(data).__name__}")

        prompts = data.get("prompts")
        if not isinstance(prompts, list):
            raise AnalysisMismatchError(expected=count, received=0)
        prompts = [str(p).strip() for p in prompts if str(p).strip()]
        if len(prompts) != count:
            raise AnalysisMismatchError(expected=count, received=len(prompts))

        confidence = data.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else 0.9
        except (TypeError, ValueError):
            confidence = 0.9
        confidence = min(max(confidence, 0.0), 1.0)

        return ProductAnalysis(
            product_type=str(data.get("product_type") or "unknown"),
            description=data.get("description"),
            confidence=confidence,
            prompts=prompts,
        )
