"""
Workflow lifecycle service.
Creates, updates, resets, retries, reports on and deletes batch workflows.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.workflow import (
    CreateWorkflowRequest, UpdateWorkflowRequest, BatchSummary, ItemResult, RetryFailedResult
)
from photobatch.database import (
    Workflow, WorkflowItem, WorkflowStatus, ItemStatus, ITEM_ANALYSIS_FIELDS,
    get_workflow_by_id, get_workflow_items, count_items_by_status, list_workflows,
    create_workflow_with_items, replace_workflow_items
)
from photobatch.errors import ValidationError, NotFoundError, InfrastructureError
from photobatch.services.locks import WorkflowLockManager, WorkflowLockHandle
from photobatch.services.batch_processor import BatchProcessingService

logger = logging.getLogger(__name__)


def format_schema_errors(error: SchemaValidationError) -> str:
    """Flatten pydantic errors into one readable message."""
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()) if part != "body")
        message = detail.get("msg", "invalid value").replace("Value error, ", "")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


def workflow_summary(workflow: Workflow) -> Dict[str, Any]:
    """camelCase view of a workflow used by the HTTP surface."""
    return {
        "id": workflow.id,
        "name": workflow.name,
        "projectId": workflow.project_id,
        "mode": workflow.prompt_mode,
        "imagesPerReference": workflow.images_per_reference,
        "imageSize": workflow.image_size,
        "imageFormat": workflow.image_format,
        "engine": workflow.engine,
        "status": workflow.status,
        "progress": workflow.progress,
        "totalItems": workflow.total_items,
        "processedItems": workflow.processed_items,
        "failedItems": workflow.failed_items,
        "createdAt": workflow.created_at.isoformat() if workflow.created_at else None,
        "startedAt": workflow.started_at.isoformat() if workflow.started_at else None,
        "completedAt": workflow.completed_at.isoformat() if workflow.completed_at else None,
    }


class WorkflowService:
    """
    Lifecycle operations over workflows and their items.

    Mutating operations take the per-workflow lock so they can never interleave
    with a running batch on the same workflow.
    """

    def __init__(self, db_session: Session, lock_manager: WorkflowLockManager,
                 batch_processor: Optional[BatchProcessingService] = None):
        self.db = db_session
        self.locks = lock_manager
        self.batch_processor = batch_processor

    def _get_workflow(self, workflow_id: str) -> Workflow:
        try:
            workflow = get_workflow_by_id(self.db, workflow_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise InfrastructureError(f"Could not load workflow: {str(e)}") from e
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def create(self, payload: Union[CreateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        """
        Create a workflow with its pending items.

        Raises:
            ValidationError: payload is malformed; nothing is written
            InfrastructureError: the insert failed and was rolled back
        """
        if not isinstance(payload, CreateWorkflowRequest):
            try:
                payload = CreateWorkflowRequest.model_validate(payload)
            except SchemaValidationError as e:
                raise ValidationError(format_schema_errors(e)) from e

        prompt_mode = payload.prompt_mode()
        fields = {
            "name": payload.name,
            "project_id": payload.project_id,
            "prompt_mode": prompt_mode.mode,
            "images_per_reference": payload.images_per_reference,
            "global_params": payload.global_params if prompt_mode.mode == "global" else None,
            "specific_prompts": prompt_mode.prompts if prompt_mode.mode == "specific" else None,
            "image_size": payload.image_size,
            "image_format": payload.image_format,
            "engine": payload.engine,
        }
        items = [item.model_dump() for item in payload.items]

        try:
            workflow = create_workflow_with_items(self.db, fields, items)
        except SQLAlchemyError as e:
            logger.error(f"[CREATE] Failed to create workflow '{payload.name}': {e}")
            raise InfrastructureError(f"Failed to create workflow: {str(e)}") from e

        logger.info(f"[CREATE] Workflow {workflow.id} '{workflow.name}' created with "
                    f"{workflow.total_items} items ({workflow.prompt_mode} mode, "
                    f"{workflow.images_per_reference} images per reference)")
        return workflow

    def update(self, payload: Union[UpdateWorkflowRequest, Dict[str, Any]]) -> Workflow:
        """
        Patch workflow settings, optionally replacing the whole item set.

        Changing imagesPerReference without new items sends every item back to
        pending, since stored prompts no longer match the slot count.
        """
        if not isinstance(payload, UpdateWorkflowRequest):
            try:
                payload = UpdateWorkflowRequest.model_validate(payload)
            except SchemaValidationError as e:
                raise ValidationError(format_schema_errors(e)) from e

        workflow_id = payload.workflow_id
        with self.locks.acquire_or_raise(workflow_id, "update"):
            workflow = self._get_workflow(workflow_id)
            prompt_mode = payload.prompt_mode()
            count_changed = workflow.images_per_reference != payload.images_per_reference

            try:
                workflow.name = payload.name
                if payload.project_id:
                    workflow.project_id = payload.project_id
                workflow.prompt_mode = prompt_mode.mode
                workflow.images_per_reference = payload.images_per_reference
                workflow.global_params = payload.global_params if prompt_mode.mode == "global" else None
                workflow.specific_prompts = prompt_mode.prompts if prompt_mode.mode == "specific" else None
                for field in ("image_size", "image_format", "engine"):
                    if field in payload.model_fields_set:
                        setattr(workflow, field, getattr(payload, field))

                if payload.items is not None:
                    replace_workflow_items(self.db, workflow, [item.model_dump() for item in payload.items])
                    logger.info(f"[UPDATE] Workflow {workflow_id}: item set replaced "
                                f"({len(payload.items)} items)")
                elif count_changed:
                    self._reset_items(workflow)
                    logger.info(f"[UPDATE] Workflow {workflow_id}: images per reference changed, items reset")

                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"[UPDATE] Error updating workflow {workflow_id}: {e}")
                raise InfrastructureError(f"Failed to update workflow: {str(e)}") from e

            self.db.refresh(workflow)
            logger.info(f"[UPDATE] Workflow {workflow_id} updated")
            return workflow

    def _reset_items(self, workflow: Workflow) -> None:
        """Send every item and counter back to the initial state; caller commits."""
        cleared = {field: None for field in ITEM_ANALYSIS_FIELDS}
        cleared["status"] = ItemStatus.PENDING.value
        self.db.query(WorkflowItem).filter(WorkflowItem.workflow_id == workflow.id).update(
            cleared, synchronize_session=False
        )
        workflow.status = WorkflowStatus.PENDING.value
        workflow.processed_items = 0
        workflow.failed_items = 0
        workflow.started_at = None
        workflow.completed_at = None

    def reset(self, workflow_id: str) -> Workflow:
        with self.locks.acquire_or_raise(workflow_id, "reset"):
            workflow = self._get_workflow(workflow_id)
            try:
                self._reset_items(workflow)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"[RESET] Error resetting workflow {workflow_id}: {e}")
                raise InfrastructureError(f"Failed to reset workflow: {str(e)}") from e

            logger.info(f"[RESET] Workflow {workflow_id} reset to pending")
            self.db.refresh(workflow)
            return workflow

    def retry_failed(self, workflow_id: str) -> RetryFailedResult:
        """
        Send failed items back to pending, leaving completed items alone.
        """
        with self.locks.acquire_or_raise(workflow_id, "retry-failed"):
            workflow = self._get_workflow(workflow_id)
            failed_items = get_workflow_items(self.db, workflow_id, ItemStatus.FAILED.value)
            if not failed_items:
                logger.info(f"[RETRY-FAILED] Workflow {workflow_id}: no failed items to retry")
                return RetryFailedResult(retried_count=0, message="No failed items to retry")

            failed_references = [
                {
                    "reference": item.reference,
                    "productName": item.product_name,
                    "error": item.error_message,
                }
                for item in failed_items
            ]

            try:
                for item in failed_items:
                    item.status = ItemStatus.PENDING.value
                    item.error_message = None
                    item.generated_prompts = None
                    item.generated_images = None
                self.db.flush()

                counts = count_items_by_status(self.db, workflow_id)
                workflow.processed_items = counts[ItemStatus.COMPLETED.value]
                workflow.failed_items = 0
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"[RETRY-FAILED] Error resetting items of workflow {workflow_id}: {e}")
                raise InfrastructureError(f"Failed to retry items: {str(e)}") from e

            logger.info(f"[RETRY-FAILED] Workflow {workflow_id}: {len(failed_items)} items back to pending")
            return RetryFailedResult(retried_count=len(failed_items), failed_references=failed_references)

    def list_failed_items(self, workflow_id: str) -> List[Dict[str, Any]]:
        self._get_workflow(workflow_id)
        items = get_workflow_items(self.db, workflow_id, ItemStatus.FAILED.value)
        items.sort(key=lambda item: item.reference)
        return [
            {
                "id": item.id,
                "reference": item.reference,
                "product_name": item.product_name,
                "error_message": item.error_message,
                "image_urls": item.image_urls,
            }
            for item in items
        ]

    def status(self, workflow_id: str) -> Dict[str, Any]:
        workflow = self._get_workflow(workflow_id)
        items = get_workflow_items(self.db, workflow_id)
        items_by_status = {status.value: 0 for status in ItemStatus}
        for item in items:
            items_by_status[item.status] = items_by_status.get(item.status, 0) + 1
        return {
            "workflow": workflow_summary(workflow),
            "itemsByStatus": items_by_status,
            "items": [item.to_dict() for item in items],
        }

    def list_workflows(self) -> List[Dict[str, Any]]:
        return [workflow.to_dict() for workflow in list_workflows(self.db)]

    def delete(self, workflow_id: str) -> None:
        with self.locks.acquire_or_raise(workflow_id, "delete"):
            workflow = self._get_workflow(workflow_id)
            try:
                self.db.delete(workflow)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"[DELETE] Error deleting workflow {workflow_id}: {e}")
                raise InfrastructureError(f"Failed to delete workflow: {str(e)}") from e
            logger.info(f"[DELETE] Workflow {workflow_id} deleted")

    def process(self, workflow_id: str) -> BatchSummary:
        """
        Run the batch synchronously under the workflow lock.
        """
        if self.batch_processor is None:
            raise RuntimeError("WorkflowService was built without a batch processor")
        with self.locks.acquire_or_raise(workflow_id, "process"):
            return self.batch_processor.process(workflow_id)

    def process_item(self, workflow_id: str, item_id: str) -> ItemResult:
        """
        Process a single pending item under the workflow lock.
        """
        if self.batch_processor is None:
            raise RuntimeError("WorkflowService was built without a batch processor")
        with self.locks.acquire_or_raise(workflow_id, "process-item"):
            return self.batch_processor.process_item(workflow_id, item_id)

    def start(self, workflow_id: str, session_factory: Callable[[], Session],
              build_batch_processor: Callable[[Session], BatchProcessingService]) -> threading.Thread:
        """
        Start the batch on a daemon thread and return immediately.

        The lock is taken here, before the thread starts, so a second start or
        process call fails fast with a conflict.
        """
        handle = self.locks.acquire_or_raise(workflow_id, "start")
        try:
            self._get_workflow(workflow_id)
        except Exception:
            handle.release()
            raise

        thread = threading.Thread(
            target=run_batch_in_background,
            args=(workflow_id, handle, session_factory, build_batch_processor),
            name=f"workflow-{workflow_id}",
            daemon=True,
        )
        thread.start()
        logger.info(f"[PROCESS] Workflow {workflow_id} started in background")
        return thread


def run_batch_in_background(workflow_id: str, handle: WorkflowLockHandle,
                            session_factory: Callable[[], Session],
                            build_batch_processor: Callable[[Session], BatchProcessingService]) -> None:
    """
    Thread target: process one workflow with its own session, then release the lock.
    """
    db = session_factory()
    try:
        summary = build_batch_processor(db).process(workflow_id)
        logger.info(f"[PROCESS] Background run of {workflow_id} finished: "
                    f"{summary.success_count} succeeded, {summary.failed_count} failed")
    except Exception as e:
        logger.exception(f"[PROCESS] Background run of {workflow_id} failed: {e}")
    finally:
        db.close()
        handle.release()
