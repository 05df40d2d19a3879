"""
Batch processing service.
Walks a workflow's pending items in creation order, one at a time, and keeps the workflow's counters current.
"""
import time
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.workflow import BatchSummary, ItemResult
from photobatch.database import (
    WorkflowStatus, ItemStatus, get_workflow_by_id, get_workflow_item, get_pending_items, count_items_by_status,
    increment_workflow_counter, update_workflow_status, update_item, utcnow
)
from photobatch.errors import NotFoundError, ValidationError, InfrastructureError
from photobatch.services.item_processor import ItemProcessingService

logger = logging.getLogger(__name__)


class BatchProcessingService:
    def __init__(self, db_session: Session, item_processor: ItemProcessingService):
        self.db = db_session
        self.item_processor = item_processor

    def process(self, workflow_id: str) -> BatchSummary:
        """
        Process every pending item of a workflow sequentially.

        Per-item failures are absorbed into the summary. Only failures touching
        the workflow record itself escape, after the workflow is marked failed.

        Raises:
            NotFoundError: workflow does not exist
            InfrastructureError: the job store failed while updating the workflow
        """
        try:
            workflow = get_workflow_by_id(self.db, workflow_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PROCESS] Could not load workflow {workflow_id}: {e}")
            raise InfrastructureError(f"Could not load workflow: {str(e)}") from e
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        start_time = time.time()
        try:
            update_workflow_status(self.db, workflow_id, WorkflowStatus.PROCESSING)
            summary = BatchSummary(
                workflow_id=workflow_id,
                total=0,
                success_count=0,
                failed_count=0,
                started_at=workflow.started_at,
            )

            pending = get_pending_items(self.db, workflow_id)
            if not pending:
                logger.info(f"[PROCESS] Workflow {workflow_id} has no pending items, marking completed")
                update_workflow_status(self.db, workflow_id, WorkflowStatus.COMPLETED)
                summary.completed_at = workflow.completed_at
                return summary

            summary.total = len(pending)
            logger.info(f"[PROCESS] Workflow {workflow_id}: processing {len(pending)} pending items")

            for position, item in enumerate(pending, start=1):
                logger.info(f"[PROCESS] Item {position}/{len(pending)}: {item.reference}")
                result = self._process_one(workflow, item)
                summary.results.append(result)

                if result.status == "success":
                    summary.success_count += 1
                    increment_workflow_counter(self.db, workflow_id, "processed_items")
                else:
                    summary.failed_count += 1
                    increment_workflow_counter(self.db, workflow_id, "failed_items")

            update_workflow_status(self.db, workflow_id, WorkflowStatus.COMPLETED)
            summary.completed_at = workflow.completed_at
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PROCESS] Workflow {workflow_id} aborted by job store error: {e}")
            self._mark_failed(workflow_id)
            raise InfrastructureError(f"Job store error while processing workflow: {str(e)}") from e

        logger.info(
            f"[PROCESS] Workflow {workflow_id} completed: {summary.success_count} succeeded, "
            f"{summary.failed_count} failed in {time.time() - start_time:.2f}s"
        )
        return summary

    def process_item(self, workflow_id: str, item_id: str) -> ItemResult:
        """
        Process one pending item of a workflow and count it.

        The workflow moves to processing on its first item and to completed once
        no pending or processing items remain.

        Raises:
            NotFoundError: workflow or item does not exist
            ValidationError: the item is not pending
            InfrastructureError: the job store failed
        """
        try:
            workflow = get_workflow_by_id(self.db, workflow_id)
            item = get_workflow_item(self.db, workflow_id, item_id) if workflow else None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PROCESS-ITEM] Could not load item {item_id} of {workflow_id}: {e}")
            raise InfrastructureError(f"Could not load item: {str(e)}") from e
        if not workflow:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if not item:
            raise NotFoundError(f"Item {item_id} not found in workflow {workflow_id}")
        if item.status != ItemStatus.PENDING.value:
            # Failed items go through retry-failed so the counters stay consistent
            raise ValidationError(f"Item {item_id} is {item.status}; only pending items can be processed")

        try:
            if workflow.status != WorkflowStatus.PROCESSING.value:
                update_workflow_status(self.db, workflow_id, WorkflowStatus.PROCESSING)

            logger.info(f"[PROCESS-ITEM] Workflow {workflow_id}: processing {item.reference}")
            result = self._process_one(workflow, item)
            counter = "processed_items" if result.status == "success" else "failed_items"
            increment_workflow_counter(self.db, workflow_id, counter)

            counts = count_items_by_status(self.db, workflow_id)
            if not counts[ItemStatus.PENDING.value] and not counts[ItemStatus.PROCESSING.value]:
                update_workflow_status(self.db, workflow_id, WorkflowStatus.COMPLETED)
                logger.info(f"[PROCESS-ITEM] Workflow {workflow_id} has no items left, marked completed")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PROCESS-ITEM] Item {item_id} of {workflow_id} aborted by job store error: {e}")
            self._mark_failed(workflow_id)
            raise InfrastructureError(f"Job store error while processing item: {str(e)}") from e

        return result

    def _process_one(self, workflow, item) -> ItemResult:
        reference = item.reference
        try:
            return self.item_processor.process_item(workflow, item)
        except SQLAlchemyError:
            raise
        except Exception as e:
            # process_item is not supposed to raise; keep the batch going if it does
            logger.exception(f"[PROCESS] Item processor raised for {reference}")
            self.db.rollback()
            error_message = f"Unexpected error: {str(e)}"
            update_item(
                self.db, item,
                status=ItemStatus.FAILED.value,
                error_message=error_message,
                processed_at=utcnow(),
            )
            return ItemResult(reference=reference, status="failed", error=error_message)

    def _mark_failed(self, workflow_id: str) -> None:
        try:
            update_workflow_status(self.db, workflow_id, WorkflowStatus.FAILED)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[PROCESS] Could not mark workflow {workflow_id} failed: {e}")
