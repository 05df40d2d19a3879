"""
FastAPI backend for batch product photography.
Provides REST API endpoints for the workflow lifecycle and serves generated images.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from photobatch.config import (
    APP_NAME, APP_VERSION, APP_DESCRIPTION, ENVIRONMENT, CORS_ORIGINS,
    LOG_LEVEL, LOG_FORMAT, MEDIA_MOUNT_PATH, STORAGE_LOCAL_PATH, API_HOST, API_PORT, OPENAI_API_KEY
)
from photobatch.database import init_database
from photobatch.routers import workflows_router
from photobatch.services.workflow_service import format_schema_errors

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup and shutdown
    """
    logger.info(f"Starting {APP_NAME}...")

    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; process and start will return 503")

    # Initialize database
    try:
        init_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise RuntimeError(f"Database initialization failed: {e}")

    logger.info(f"{APP_NAME} started successfully")
    yield
    logger.info(f"Shutting down {APP_NAME}...")


app = FastAPI(
    title=APP_NAME,
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Configure CORS with environment-based origins
cors_origins = CORS_ORIGINS.split(",") if CORS_ORIGINS != "*" else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflows_router)

# Generated images
Path(STORAGE_LOCAL_PATH).mkdir(parents=True, exist_ok=True)
app.mount(MEDIA_MOUNT_PATH, StaticFiles(directory=STORAGE_LOCAL_PATH), name="media")


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "timestamp": datetime.now().isoformat()
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """
    Global exception handler for HTTP exceptions
    """
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """
    Malformed request bodies are reported as 400 with a readable message
    """
    return error_response(400, format_schema_errors(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """
    Global exception handler for general exceptions
    """
    logger.error(f"Unhandled exception: {str(exc)}")
    return error_response(500, "Internal server error")


@app.get("/")
async def root():
    """
    Root endpoint with environment-based information
    """
    return {
        "message": APP_NAME,
        "version": APP_VERSION,
        "description": APP_DESCRIPTION,
        "environment": ENVIRONMENT,
        "docs": "/docs",
        "health": "/api/workflows/health",
        "endpoints": {
            "create": "POST /api/workflows/create",
            "update": "POST /api/workflows/update",
            "process": "POST /api/workflows/process",
            "process_item": "POST /api/workflows/process-item",
            "start": "POST /api/workflows/start",
            "status": "GET /api/workflows/status?workflowId=",
            "reset": "POST /api/workflows/reset",
            "retry_failed": "POST /api/workflows/retry-failed",
            "list_failed": "GET /api/workflows/retry-failed?workflowId=",
            "delete": "POST /api/workflows/delete",
            "list": "GET /api/workflows/list"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "photobatch.main:app",
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower()
    )
