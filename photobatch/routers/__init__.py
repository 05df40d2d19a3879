"""
API routers for the photo batch backend.
"""
from .workflows import router as workflows_router

__all__ = ["workflows_router"]
