"""
Database models and setup for the product photo batch engine.
Provides persistent storage for workflows, their items and the gallery images they produce.
"""
import uuid
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Iterable
from sqlalchemy import create_engine, event, Column, String, DateTime, Text, Float, Integer, JSON, ForeignKey, Index
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship

from .config import DATABASE_URL

logger = logging.getLogger(__name__)

# Create base class for models
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Workflow(Base):
    """
    One batch job over a catalog of product references
    """
    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    project_id = Column(String, nullable=False)

    # Prompt configuration
    prompt_mode = Column(String(20), nullable=False, default="global")
    images_per_reference = Column(Integer, nullable=False)
    global_params = Column(Text, nullable=True)
    specific_prompts = Column(JSON, nullable=True)

    # Output selectors
    image_size = Column(String(20), default="1024x1024")
    image_format = Column(String(10), default="jpg")
    engine = Column(String(20), default="standard")

    status = Column(String(20), nullable=False, default=WorkflowStatus.PENDING.value)
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "WorkflowItem",
        back_populates="workflow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="(WorkflowItem.created_at, WorkflowItem.position)",
    )

    @property
    def progress(self) -> int:
        if not self.total_items:
            return 0
        # Half rounds up (12.5 -> 13), not to even
        return int((self.processed_items or 0) * 100 / self.total_items + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "project_id": self.project_id,
            "prompt_mode": self.prompt_mode,
            "images_per_reference": self.images_per_reference,
            "global_params": self.global_params,
            "specific_prompts": self.specific_prompts,
            "image_size": self.image_size,
            "image_format": self.image_format,
            "engine": self.engine,
            "status": self.status,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "failed_items": self.failed_items,
            "progress": self.progress,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
        }


class WorkflowItem(Base):
    """
    One catalog reference's unit of work within a workflow
    """
    __tablename__ = "workflow_items"
    __table_args__ = (Index("idx_workflow_items_workflow_status", "workflow_id", "status"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # insertion order within the workflow

    # Catalog input
    reference = Column(String(255), nullable=False)
    asin = Column(String(64), nullable=True)
    product_name = Column(String(500), nullable=True)
    image_urls = Column(JSON, nullable=False)

    status = Column(String(20), nullable=False, default=ItemStatus.PENDING.value)

    # Analysis output
    detected_product_type = Column(String(255), nullable=True)
    detection_description = Column(Text, nullable=True)
    detection_confidence = Column(Float, nullable=True)
    generated_prompts = Column(JSON, nullable=True)

    # Generation output: [{url, prompt, index}]
    generated_images = Column(JSON, nullable=True)

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    workflow = relationship("Workflow", back_populates="items")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "position": self.position,
            "reference": self.reference,
            "asin": self.asin,
            "product_name": self.product_name,
            "image_urls": self.image_urls,
            "status": self.status,
            "detected_product_type": self.detected_product_type,
            "detection_description": self.detection_description,
            "detection_confidence": self.detection_confidence,
            "generated_prompts": self.generated_prompts,
            "generated_images": self.generated_images,
            "error_message": self.error_message,
            "created_at": _isoformat(self.created_at),
            "processed_at": _isoformat(self.processed_at),
        }


class ProjectImage(Base):
    """
    Gallery record for a generated image, stored under its project
    """
    __tablename__ = "project_images"
    __table_args__ = (Index("idx_project_images_project_reference", "project_id", "reference"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String, nullable=False)
    workflow_id = Column(String, nullable=True)  # provenance only; gallery outlives the workflow
    reference = Column(String(255), nullable=True)
    asin = Column(String(64), nullable=True)
    image_index = Column(Integer, nullable=False)
    filename = Column(String(500), nullable=False)
    mime = Column(String(50), nullable=False)
    storage_path = Column(String(1000), nullable=False)
    prompt_used = Column(Text, nullable=True)
    original_image_url = Column(Text, nullable=True)
    generation_mode = Column(String(20), default="automated")
    validation_status = Column(String(20), default="pending")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "workflow_id": self.workflow_id,
            "reference": self.reference,
            "asin": self.asin,
            "image_index": self.image_index,
            "filename": self.filename,
            "mime": self.mime,
            "storage_path": self.storage_path,
            "prompt_used": self.prompt_used,
            "original_image_url": self.original_image_url,
            "generation_mode": self.generation_mode,
            "validation_status": self.validation_status,
            "created_at": _isoformat(self.created_at),
        }


def create_database_engine(url: str, **kwargs) -> Engine:
    """
    Create an engine; SQLite gets cross-thread access and enforced foreign keys
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    db_engine = create_engine(url, **kwargs)

    if db_engine.dialect.name == "sqlite":
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


engine = create_database_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_database_session() -> Session:
    """
    Dependency to get database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(bind: Optional[Engine] = None):
    """
    Initialize database tables
    """
    Base.metadata.create_all(bind=bind or engine)


# Fields cleared when an item goes back to pending
ITEM_ANALYSIS_FIELDS = (
    "detected_product_type",
    "detection_description",
    "detection_confidence",
    "generated_prompts",
    "generated_images",
    "error_message",
    "processed_at",
)


def get_workflow_by_id(db: Session, workflow_id: str) -> Optional[Workflow]:
    """
    Get workflow by ID
    """
    return db.query(Workflow).filter(Workflow.id == workflow_id).first()


def list_workflows(db: Session) -> List[Workflow]:
    return db.query(Workflow).order_by(Workflow.created_at.desc()).all()


def build_items(workflow_id: str, items: Iterable[Dict[str, Any]]) -> List[WorkflowItem]:
    """
    Build pending WorkflowItem rows, stamping insertion order
    """
    created_at = utcnow()
    return [
        WorkflowItem(
            workflow_id=workflow_id,
            position=position,
            reference=item["reference"],
            asin=item.get("asin"),
            product_name=item.get("product_name"),
            image_urls=list(item["image_urls"]),
            status=ItemStatus.PENDING.value,
            created_at=created_at,
        )
        for position, item in enumerate(items)
    ]


def create_workflow_with_items(db: Session, workflow_fields: Dict[str, Any],
                               items: List[Dict[str, Any]]) -> Workflow:
    """
    Create a workflow and its pending items as one unit.

    The workflow row is flushed first to get its id; if the item insert fails
    the whole transaction is rolled back so no workflow exists without items.
    """
    workflow = Workflow(
        status=WorkflowStatus.PENDING.value,
        total_items=len(items),
        processed_items=0,
        failed_items=0,
        **workflow_fields
    )
    try:
        db.add(workflow)
        db.flush()  # Flush to get the workflow.id before creating items

        db.add_all(build_items(workflow.id, items))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(workflow)
    return workflow


def replace_workflow_items(db: Session, workflow: Workflow, items: List[Dict[str, Any]]) -> None:
    """
    Swap the entire item set and reset counters; caller commits
    """
    db.query(WorkflowItem).filter(WorkflowItem.workflow_id == workflow.id).delete(synchronize_session=False)
    db.add_all(build_items(workflow.id, items))
    workflow.total_items = len(items)
    workflow.processed_items = 0
    workflow.failed_items = 0
    workflow.status = WorkflowStatus.PENDING.value
    workflow.started_at = None
    workflow.completed_at = None


def get_workflow_items(db: Session, workflow_id: str, status: Optional[str] = None) -> List[WorkflowItem]:
    """
    Items of a workflow in creation order, optionally filtered by status
    """
    query = db.query(WorkflowItem).filter(WorkflowItem.workflow_id == workflow_id)
    if status:
        query = query.filter(WorkflowItem.status == status)
    return query.order_by(WorkflowItem.created_at.asc(), WorkflowItem.position.asc()).all()


def get_pending_items(db: Session, workflow_id: str) -> List[WorkflowItem]:
    return get_workflow_items(db, workflow_id, ItemStatus.PENDING.value)


def get_workflow_item(db: Session, workflow_id: str, item_id: str) -> Optional[WorkflowItem]:
    return db.query(WorkflowItem).filter(
        WorkflowItem.workflow_id == workflow_id, WorkflowItem.id == item_id
    ).first()


def count_items_by_status(db: Session, workflow_id: str) -> Dict[str, int]:
    counts = {status.value: 0 for status in ItemStatus}
    rows = db.query(WorkflowItem.status).filter(WorkflowItem.workflow_id == workflow_id).all()
    for (status,) in rows:
        counts[status] = counts.get(status, 0) + 1
    return counts


def update_workflow_status(db: Session, workflow_id: str, status: WorkflowStatus) -> bool:
    """
    Update workflow status, stamping started_at/completed_at
    """
    workflow = get_workflow_by_id(db, workflow_id)
    if not workflow:
        return False

    workflow.status = status.value
    if status == WorkflowStatus.PROCESSING:
        workflow.started_at = utcnow()
        workflow.completed_at = None
    elif status in [WorkflowStatus.COMPLETED, WorkflowStatus.FAILED]:
        workflow.completed_at = utcnow()

    db.commit()
    return True


def increment_workflow_counter(db: Session, workflow_id: str, counter: str) -> bool:
    """
    Atomically add one to processed_items or failed_items.

    Runs as a single UPDATE so concurrent readers never see a lost update; the
    WHERE clause keeps processed_items + failed_items within total_items.
    """
    if counter not in ("processed_items", "failed_items"):
        raise ValueError(f"Unknown counter {counter}")

    column = getattr(Workflow, counter)
    updated = (
        db.query(Workflow)
        .filter(
            Workflow.id == workflow_id,
            Workflow.processed_items + Workflow.failed_items < Workflow.total_items,
        )
        .update({column: column + 1}, synchronize_session=False)
    )
    db.commit()
    if not updated:
        logger.warning(f"Counter {counter} not incremented for workflow {workflow_id} (at total)")
    return bool(updated)


def update_item(db: Session, item: WorkflowItem, **fields) -> WorkflowItem:
    """
    Patch an item and commit immediately so pollers see progress
    """
    for key, value in fields.items():
        setattr(item, key, value)
    db.commit()
    return item
