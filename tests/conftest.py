"""Shared pytest fixtures for photo batch tests."""

import io
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Any, Generator, List, Optional, Set

# Point module-level settings at throwaway locations before the app is imported
_MEDIA_ROOT = tempfile.mkdtemp(prefix="photobatch-media-")
os.environ["STORAGE_LOCAL_PATH"] = _MEDIA_ROOT
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MEDIA_BASE_URL"] = "https://cdn.example.com/media"

import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from shared.workflow import ProductAnalysis
from photobatch.database import create_database_engine, init_database
from photobatch.errors import AnalysisFailure, AnalysisMismatchError, GenerationFailure
from photobatch.services.locks import WorkflowLockManager
from photobatch.services.gallery import GalleryService
from photobatch.services.image_generation import GeneratedImage
from photobatch.services.item_processor import ItemProcessingService
from photobatch.services.batch_processor import BatchProcessingService
from photobatch.services.workflow_service import WorkflowService


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_MEDIA_ROOT, ignore_errors=True)


class FakeAnalysisService:
    """Analysis stand-in; fails or under-delivers for chosen image URLs."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_urls: Set[str] = set()
        self.short_urls: Set[str] = set()

    def analyze(self, product_name, image_url, prompt_mode, count):
        self.calls.append({
            "product_name": product_name,
            "image_url": image_url,
            "mode": prompt_mode.mode,
            "count": count,
        })
        if image_url in self.fail_urls:
            raise AnalysisFailure(f"Vision API call failed for {image_url}")
        prompt_count = count - 1 if image_url in self.short_urls else count
        prompts = [f"{product_name or 'product'} prompt {i}" for i in range(1, prompt_count + 1)]
        if len(prompts) != count:
            raise AnalysisMismatchError(expected=count, received=len(prompts))
        return ProductAnalysis(
            product_type="floor lamp",
            description="Tall lamp with fabric shade",
            confidence=0.95,
            prompts=prompts,
        )


class FakeGenerationService:
    """Generation stand-in; fails any prompt matched by fail_when with the error from make_error."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_when: Callable[[str], bool] = lambda prompt: False
        self.make_error: Callable[[str], Exception] = (
            lambda prompt: GenerationFailure(f"Image model call failed for '{prompt}'")
        )

    def generate(self, prompt, reference_image_urls, engine="standard",
                 image_size="1024x1024", image_format="jpg"):
        self.calls.append({
            "prompt": prompt,
            "reference_image_urls": list(reference_image_urls),
            "engine": engine,
            "image_size": image_size,
            "image_format": image_format,
        })
        if self.fail_when(prompt):
            raise self.make_error(prompt)
        return GeneratedImage(
            data=b"fake-image-bytes",
            mime="image/jpeg",
            extension=image_format,
            prompt=prompt,
        )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for gallery files.

    Yields:
        Path to temporary directory
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def engine():
    db_engine = create_database_engine("sqlite://", poolclass=StaticPool)
    init_database(bind=db_engine)
    try:
        yield db_engine
    finally:
        db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def analysis_service() -> FakeAnalysisService:
    return FakeAnalysisService()


@pytest.fixture
def generation_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def lock_manager() -> WorkflowLockManager:
    return WorkflowLockManager()


@pytest.fixture
def build_batch_processor(analysis_service, generation_service, temp_dir) -> Callable[[Session], BatchProcessingService]:
    """Builder wiring fakes into a real item processor and gallery."""

    def _build(session: Session) -> BatchProcessingService:
        item_processor = ItemProcessingService(
            session,
            analysis_service,
            generation_service,
            GalleryService(session, storage_root=str(temp_dir), media_base_url="/media"),
        )
        return BatchProcessingService(session, item_processor)

    return _build


@pytest.fixture
def batch_processor(db, build_batch_processor) -> BatchProcessingService:
    return build_batch_processor(db)


@pytest.fixture
def workflow_service(db, lock_manager, batch_processor) -> WorkflowService:
    return WorkflowService(db, lock_manager, batch_processor)


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """Encode a solid-color test image with Pillow."""

    def _make(width: int = 64, height: int = 64, image_format: str = "PNG",
              color: str = "white") -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, format=image_format)
        return buffer.getvalue()

    return _make


class FakeHTTPResponse:
    def __init__(self, content: bytes = b"", status_code: int = 200, content_type: str = "image/png"):
        self.content = content
        self.status_code = status_code
        self.headers = {"content-type": content_type} if content_type else {}


@pytest.fixture
def fake_http(monkeypatch):
    """Serve canned responses to requests.get, keyed by URL."""
    responses: Dict[str, Any] = {}
    requested: List[str] = []

    def _get(url, timeout=None, **kwargs):
        requested.append(url)
        response = responses.get(url)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return FakeHTTPResponse(b"not found", status_code=404, content_type="text/plain")
        return response

    monkeypatch.setattr("photobatch.services.image_utils.requests.get", _get)

    def _serve(url: str, content: Any, status_code: int = 200, content_type: str = "image/png"):
        if isinstance(content, Exception):
            responses[url] = content
        else:
            responses[url] = FakeHTTPResponse(content, status_code, content_type)

    _serve.requested = requested
    return _serve


@pytest.fixture
def make_payload() -> Callable[..., Dict[str, Any]]:
    """Build a create payload with `item_count` references SKU-1..SKU-n."""

    def _make(item_count: int = 1, images_per_reference: int = 2, mode: str = "global",
              specific_prompts: Optional[List[str]] = None, **overrides) -> Dict[str, Any]:
        payload = {
            "name": "Lighting catalog",
            "projectId": "project-1",
            "mode": mode,
            "imagesPerReference": images_per_reference,
            "items": [
                {
                    "reference": f"SKU-{i}",
                    "asin": f"B00000000{i}",
                    "productName": f"Lamp {i}",
                    "imageUrls": [f"https://cdn.example.com/sku-{i}.jpg"],
                }
                for i in range(1, item_count + 1)
            ],
        }
        if specific_prompts is not None:
            payload["specificPrompts"] = specific_prompts
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def api_client(session_factory, lock_manager, build_batch_processor):
    """FastAPI TestClient wired to the in-memory database and fake capabilities."""
    from fastapi.testclient import TestClient

    from photobatch.main import app
    from photobatch.routers.workflows import (
        get_database, get_session_factory, get_lock_manager, get_batch_processor_factory
    )

    def override_get_database():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_database] = override_get_database
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_lock_manager] = lambda: lock_manager
    app.dependency_overrides[get_batch_processor_factory] = lambda: build_batch_processor

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
