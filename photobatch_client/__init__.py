"""
Python client for the photo batch workflow API.
"""
from .workflow_api import WorkflowAPIClient, WorkflowProgressTracker

__all__ = ["WorkflowAPIClient", "WorkflowProgressTracker"]
