"""
Workflow API client.
Handles communication with the photo batch FastAPI backend.
"""
import time
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class WorkflowAPIClient:
    """Client for interacting with the workflow API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: int = 30):
        self.base_url = base_url.rstrip("/")
        self.api_base = f"{self.base_url}/api/workflows"
        self.timeout = timeout
        # Synchronous processing can take minutes per item
        self.process_timeout = 3600

    def _request(self, method: str, endpoint: str, timeout: Optional[int] = None, **kwargs) -> Dict[str, Any]:
        try:
            response = requests.request(
                method,
                f"{self.api_base}/{endpoint}",
                timeout=timeout or self.timeout,
                **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {endpoint} request failed: {e}")
            return {
                "success": False,
                "error": f"Request failed: {str(e)}"
            }

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code == 200:
            return {
                "success": True,
                "data": body
            }
        return {
            "success": False,
            "status_code": response.status_code,
            "error": body.get("error", f"API error {response.status_code}"),
            "detail": body.get("detail", response.text)
        }

    def health_check(self) -> Dict[str, Any]:
        """Check if the API and its job store are reachable."""
        return self._request("GET", "health", timeout=10)

    def create_workflow(self, name: str, project_id: str, items: List[Dict[str, Any]],
                        images_per_reference: int, mode: str = "global",
                        global_params: Optional[str] = None,
                        specific_prompts: Optional[List[str]] = None,
                        image_size: str = "1024x1024", image_format: str = "jpg",
                        engine: str = "standard") -> Dict[str, Any]:
        """
        Create a workflow.

        Args:
            name: Workflow name
            project_id: Gallery project that receives the images
            items: [{reference, asin?, productName?, imageUrls}]
            images_per_reference: Images to generate per reference
            mode: global or specific
            global_params: Shared requirements (global mode)
            specific_prompts: One specification per image (specific mode)

        Returns:
            dict: API response with the created workflow or error
        """
        payload = {
            "name": name,
            "projectId": project_id,
            "mode": mode,
            "imagesPerReference": images_per_reference,
            "imageSize": image_size,
            "imageFormat": image_format,
            "engine": engine,
            "items": items
        }
        if global_params:
            payload["globalParams"] = global_params
        if specific_prompts:
            payload["specificPrompts"] = specific_prompts
        return self._request("POST", "create", json=payload)

    def update_workflow(self, workflow_id: str, name: str, images_per_reference: int,
                        mode: str = "global", global_params: Optional[str] = None,
                        specific_prompts: Optional[List[str]] = None,
                        items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        payload = {
            "workflowId": workflow_id,
            "name": name,
            "mode": mode,
            "imagesPerReference": images_per_reference
        }
        if global_params:
            payload["globalParams"] = global_params
        if specific_prompts:
            payload["specificPrompts"] = specific_prompts
        if items is not None:
            payload["items"] = items
        return self._request("POST", "update", json=payload)

    def process_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Run every pending item and wait for the summary."""
        return self._request("POST", "process", timeout=self.process_timeout,
                             json={"workflowId": workflow_id})

    def process_item(self, workflow_id: str, item_id: str) -> Dict[str, Any]:
        """Run one pending item; a failed item still comes back with success true."""
        return self._request("POST", "process-item", timeout=self.process_timeout,
                             json={"workflowId": workflow_id, "itemId": item_id})

    def start_workflow(self, workflow_id: str) -> Dict[str, Any]:
        """Start processing in the background; returns immediately."""
        return self._request("POST", "start", json={"workflowId": workflow_id})

    def get_status(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("GET", "status", timeout=10, params={"workflowId": workflow_id})

    def reset_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("POST", "reset", json={"workflowId": workflow_id})

    def retry_failed(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("POST", "retry-failed", json={"workflowId": workflow_id})

    def list_failed_items(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("GET", "retry-failed", params={"workflowId": workflow_id})

    def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("POST", "delete", json={"workflowId": workflow_id})

    def list_workflows(self) -> Dict[str, Any]:
        return self._request("GET", "list")


class WorkflowProgressTracker:
    """Helper class to follow a workflow running in the background."""

    TERMINAL_STATUSES = ("completed", "failed")

    def __init__(self, client: WorkflowAPIClient, workflow_id: str):
        self.client = client
        self.workflow_id = workflow_id
        self.reset()

    def reset(self):
        """Reset tracking state."""
        self.start_time = None
        self.status = "unknown"
        self.progress = 0
        self.items_by_status: Dict[str, int] = {}
        self.last_response: Optional[Dict[str, Any]] = None

    def update(self, status_data: Dict[str, Any]):
        """Record one status payload."""
        workflow = status_data.get("workflow", {})
        self.status = workflow.get("status", "unknown")
        self.progress = workflow.get("progress", 0)
        self.items_by_status = status_data.get("itemsByStatus", {})
        self.last_response = status_data

    @property
    def is_complete(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def get_elapsed_time(self) -> float:
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def wait(self, callback: Optional[Callable[[Dict[str, Any]], None]] = None,
             polling_interval: float = 2.0, timeout: int = 3600) -> Dict[str, Any]:
        """
        Poll status until the workflow reaches a terminal state.

        Args:
            callback: Called with each status payload
            polling_interval: Seconds between status checks
            timeout: Maximum time to poll in seconds

        Returns:
            Final status payload, or {"status": "error"|"timeout", "error": ...}
        """
        self.start_time = time.time()

        while self.get_elapsed_time() < timeout:
            status_response = self.client.get_status(self.workflow_id)
            if not status_response["success"]:
                return {"status": "error", "error": status_response["error"]}

            self.update(status_response["data"])
            if callback:
                callback(status_response["data"])

            if self.is_complete:
                return status_response["data"]

            time.sleep(polling_interval)

        return {"status": "timeout", "error": f"Workflow polling timed out after {timeout}s"}
