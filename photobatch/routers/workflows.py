"""
Workflow API routes.
Exposes the batch lifecycle (create, update, process, process-item, start, status, reset, retry, delete, list) over JSON.
"""
import logging
from typing import Any, Callable, Dict

from fastapi import APIRouter, HTTPException, Query, status, Depends
from openai import OpenAI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.workflow import (
    CreateWorkflowRequest, UpdateWorkflowRequest, WorkflowIdRequest, ProcessItemRequest, HealthResponse
)
from photobatch.config import OPENAI_API_KEY, APP_VERSION
from photobatch.database import SessionLocal, get_database_session
from photobatch.errors import PhotoBatchError
from photobatch.services.locks import WorkflowLockManager
from photobatch.services.product_analysis import ProductAnalysisService
from photobatch.services.image_generation import ImageGenerationService
from photobatch.services.gallery import GalleryService
from photobatch.services.item_processor import ItemProcessingService
from photobatch.services.batch_processor import BatchProcessingService
from photobatch.services.workflow_service import WorkflowService, workflow_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])

# One lock table per process; every request shares it
workflow_locks = WorkflowLockManager()

BatchProcessorFactory = Callable[[Session], BatchProcessingService]


def build_batch_processor(db: Session, client: OpenAI) -> BatchProcessingService:
    item_processor = ItemProcessingService(
        db,
        ProductAnalysisService(client),
        ImageGenerationService(client),
        GalleryService(db),
    )
    return BatchProcessingService(db, item_processor)


def get_openai_client() -> OpenAI:
    """Dependency to get OpenAI client."""
    api_key = OPENAI_API_KEY
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OpenAI API key not configured"
        )
    return OpenAI(api_key=api_key)


def get_database():
    """Dependency to get database session."""
    yield from get_database_session()


def get_session_factory() -> Callable[[], Session]:
    """Dependency to get a session factory for background threads."""
    return SessionLocal


def get_lock_manager() -> WorkflowLockManager:
    return workflow_locks


def get_batch_processor_factory(client: OpenAI = Depends(get_openai_client)) -> BatchProcessorFactory:
    """Dependency to get a builder for batch processors bound to a session."""
    return lambda db: build_batch_processor(db, client)


def get_workflow_service(
    db: Session = Depends(get_database),
    locks: WorkflowLockManager = Depends(get_lock_manager)
) -> WorkflowService:
    """Dependency to get workflow lifecycle service."""
    return WorkflowService(db, locks)


def to_http_exception(error: PhotoBatchError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


@router.post("/create")
def create_workflow(
    request: CreateWorkflowRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    """
    Create a workflow and its pending items from catalog references.
    """
    try:
        workflow = workflow_service.create(request)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, "workflow": workflow_summary(workflow)}


@router.post("/update")
def update_workflow(
    request: UpdateWorkflowRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    """
    Patch workflow settings; a supplied item list replaces every existing item.
    """
    try:
        workflow = workflow_service.update(request)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, "workflow": workflow.to_dict()}


@router.post("/process")
def process_workflow(
    request: WorkflowIdRequest,
    db: Session = Depends(get_database),
    locks: WorkflowLockManager = Depends(get_lock_manager),
    batch_processor_factory: BatchProcessorFactory = Depends(get_batch_processor_factory)
) -> Dict[str, Any]:
    """
    Process every pending item synchronously and return the batch summary.

    Item failures are reported inside the summary; a non-2xx status means the
    batch could not run at all.
    """
    workflow_service = WorkflowService(db, locks, batch_processor_factory(db))
    try:
        summary = workflow_service.process(request.workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, "summary": summary.to_response()}


@router.post("/process-item")
def process_workflow_item(
    request: ProcessItemRequest,
    db: Session = Depends(get_database),
    locks: WorkflowLockManager = Depends(get_lock_manager),
    batch_processor_factory: BatchProcessorFactory = Depends(get_batch_processor_factory)
) -> Dict[str, Any]:
    """
    Process one pending item synchronously.

    A failed item still answers 200 with status "failed" and its error.
    """
    workflow_service = WorkflowService(db, locks, batch_processor_factory(db))
    try:
        result = workflow_service.process_item(request.workflow_id, request.item_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    item = {
        "id": request.item_id,
        "reference": result.reference,
        "status": result.status,
        "imagesGenerated": result.images_generated,
    }
    if result.error:
        item["error"] = result.error
    return {"success": True, "item": item}


@router.post("/start")
def start_workflow(
    request: WorkflowIdRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    batch_processor_factory: BatchProcessorFactory = Depends(get_batch_processor_factory)
) -> Dict[str, Any]:
    """
    Start processing in the background and return immediately.

    Poll /api/workflows/status for progress.
    """
    workflow_id = request.workflow_id
    try:
        workflow_service.start(workflow_id, session_factory, batch_processor_factory)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {
        "success": True,
        "workflowId": workflow_id,
        "message": "Workflow started. Poll the status endpoint to track progress.",
        "pollingEndpoint": f"/api/workflows/status?workflowId={workflow_id}"
    }


@router.get("/status")
def get_workflow_status(
    workflow_id: str = Query(..., alias="workflowId", min_length=1),
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    try:
        result = workflow_service.status(workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, **result}


@router.post("/reset")
def reset_workflow(
    request: WorkflowIdRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    """
    Send the workflow and every item back to pending for a full re-run.
    """
    try:
        workflow = workflow_service.reset(request.workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, "workflow": workflow_summary(workflow)}


@router.post("/retry-failed")
def retry_failed_items(
    request: WorkflowIdRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    """
    Send failed items back to pending; completed items are untouched.
    """
    try:
        result = workflow_service.retry_failed(request.workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e

    response = {
        "success": True,
        "retriedCount": result.retried_count,
        "failedReferences": result.failed_references,
    }
    if result.message:
        response["message"] = result.message
    return response


@router.get("/retry-failed")
def list_failed_items(
    workflow_id: str = Query(..., alias="workflowId", min_length=1),
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    """
    List failed items without changing them.
    """
    try:
        failed_items = workflow_service.list_failed_items(workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True, "failedItems": failed_items, "count": len(failed_items)}


@router.post("/delete")
def delete_workflow(
    request: WorkflowIdRequest,
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    try:
        workflow_service.delete(request.workflow_id)
    except PhotoBatchError as e:
        raise to_http_exception(e) from e
    return {"success": True}


@router.get("/list")
def list_workflows(
    workflow_service: WorkflowService = Depends(get_workflow_service)
) -> Dict[str, Any]:
    return {"success": True, "workflows": workflow_service.list_workflows()}


@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_database)):
    """
    Health check endpoint for the workflow service.
    """
    try:
        db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        database_ok = False

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        database=database_ok,
        openai_configured=bool(OPENAI_API_KEY),
        version=APP_VERSION
    )
