"""
Item processing service.
Runs analysis then one generation per prompt for a single workflow item and records the outcome.
"""
import time
import logging
from typing import List, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.utils import build_image_filename, truncate_text
from shared.workflow import build_prompt_mode, GeneratedImageResult, ItemResult
from photobatch.database import Workflow, WorkflowItem, ItemStatus, update_item, utcnow
from photobatch.errors import PhotoBatchError, GenerationFailure
from photobatch.services.product_analysis import ProductAnalysisService
from photobatch.services.image_generation import ImageGenerationService, GeneratedImage
from photobatch.services.gallery import GalleryService, GalleryImage

logger = logging.getLogger(__name__)


class ItemProcessingService:
    """
    Drives analysis -> N x generation for one WorkflowItem.

    process_item never raises: every failure ends with the item marked failed
    and a failed ItemResult returned to the caller.
    """

    def __init__(self, db_session: Session, analysis_service: ProductAnalysisService,
                 generation_service: ImageGenerationService, gallery_service: GalleryService):
        self.db = db_session
        self.analysis_service = analysis_service
        self.generation_service = generation_service
        self.gallery_service = gallery_service

    def process_item(self, workflow: Workflow, item: WorkflowItem) -> ItemResult:
        reference = item.reference
        start_time = time.time()

        try:
            update_item(self.db, item, status=ItemStatus.PROCESSING.value)
            logger.info(f"[ITEM] {reference}: processing (workflow {workflow.id})")

            count = workflow.images_per_reference
            try:
                prompt_mode = build_prompt_mode(
                    workflow.prompt_mode, count, workflow.global_params, workflow.specific_prompts
                )
            except ValueError as e:
                return self._fail(item, reference, f"Invalid workflow configuration: {str(e)}")
            source_url = item.image_urls[0]

            # Step 1: analysis
            analysis = self.analysis_service.analyze(item.product_name, source_url, prompt_mode, count)
            update_item(
                self.db, item,
                detected_product_type=analysis.product_type,
                detection_description=analysis.description,
                detection_confidence=analysis.confidence,
                generated_prompts=analysis.prompts,
            )
            logger.info(f"[ITEM] {reference}: detected '{analysis.product_type}' "
                        f"({analysis.confidence:.2f}), {len(analysis.prompts)} prompts")

            # Step 2: one generation per prompt, each slot isolated
            generated, slot_errors = self._generate_all(workflow, item, analysis.prompts, source_url)
            if not generated:
                raise GenerationFailure(
                    f"All {count} image generations failed: " + "; ".join(slot_errors)
                )

            # Step 3: gallery + completion
            results = self._store_images(workflow, item, generated, source_url)
            update_item(
                self.db, item,
                status=ItemStatus.COMPLETED.value,
                generated_images=[r.model_dump() for r in results],
                error_message=None,
                processed_at=utcnow(),
            )
            logger.info(f"[ITEM] {reference}: completed with {len(results)}/{count} images "
                        f"in {time.time() - start_time:.2f}s")
            return ItemResult(reference=reference, status="success", images_generated=len(results))

        except PhotoBatchError as e:
            error_message = e.message
        except Exception as e:
            logger.exception(f"[ITEM] {reference}: unexpected error")
            error_message = f"Unexpected error: {str(e)}"

        return self._fail(item, reference, error_message)

    def _generate_all(self, workflow: Workflow, item: WorkflowItem, prompts: List[str],
                      source_url: str) -> Tuple[List[Tuple[int, GeneratedImage]], List[str]]:
        generated = []
        slot_errors = []
        for index, prompt in enumerate(prompts, start=1):
            try:
                image = self.generation_service.generate(
                    prompt,
                    [source_url],
                    engine=workflow.engine or "standard",
                    image_size=workflow.image_size or "1024x1024",
                    image_format=workflow.image_format or "jpg",
                )
            except GenerationFailure as e:
                logger.warning(f"[ITEM] {item.reference}: image {index}/{len(prompts)} failed: {e.message}")
                slot_errors.append(f"image {index}: {e.message}")
                continue
            except Exception as e:
                # A slot never takes the rest of the item down with it
                logger.exception(f"[ITEM] {item.reference}: image {index}/{len(prompts)} raised unexpectedly")
                slot_errors.append(f"image {index}: Unexpected error: {str(e)}")
                continue
            generated.append((index, image))
        return generated, slot_errors

    def _store_images(self, workflow: Workflow, item: WorkflowItem,
                      generated: List[Tuple[int, GeneratedImage]], source_url: str) -> List[GeneratedImageResult]:
        gallery_images = [
            GalleryImage(
                data=image.data,
                filename=build_image_filename(item.reference, index, image.extension, item.asin),
                mime=image.mime,
                index=index,
                reference=item.reference,
                asin=item.asin,
                prompt=image.prompt,
            )
            for index, image in generated
        ]
        records = self.gallery_service.add_images(
            workflow.project_id, gallery_images,
            original_image_url=source_url,
            workflow_id=workflow.id,
        )
        return [
            GeneratedImageResult(url=record["url"], prompt=gallery_image.prompt, index=gallery_image.index)
            for record, gallery_image in zip(records, gallery_images)
        ]

    def _fail(self, item: WorkflowItem, reference: str, error_message: str) -> ItemResult:
        logger.error(f"[ITEM] {reference}: failed: {truncate_text(error_message, 300)}")
        try:
            self.db.rollback()
            update_item(
                self.db, item,
                status=ItemStatus.FAILED.value,
                error_message=error_message,
                processed_at=utcnow(),
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[ITEM] {reference}: could not record failure: {e}")
        return ItemResult(reference=reference, status="failed", error=error_message)
