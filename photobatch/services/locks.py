"""
In-process per-workflow lock primitives.
Guards against two mutating operations running on the same workflow at once.
"""
import threading
import uuid
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from photobatch.errors import ConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowLockHandle:
    manager: "WorkflowLockManager"
    workflow_id: str
    token: str
    operation: str

    def release(self) -> bool:
        return self.manager.release(self.workflow_id, self.token)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class WorkflowLockManager:
    """Acquire and release one lock per workflow id, non-blocking."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._held: Dict[str, WorkflowLockHandle] = {}

    def acquire(self, workflow_id: str, operation: str = "process") -> Optional[WorkflowLockHandle]:
        with self._mutex:
            if workflow_id in self._held:
                return None
            handle = WorkflowLockHandle(
                manager=self,
                workflow_id=workflow_id,
                token=str(uuid.uuid4()),
                operation=operation,
            )
            self._held[workflow_id] = handle
            return handle

    def acquire_or_raise(self, workflow_id: str, operation: str) -> WorkflowLockHandle:
        handle = self.acquire(workflow_id, operation)
        if handle is None:
            holder = self.holder(workflow_id)
            busy_with = holder.operation if holder else "another operation"
            logger.warning(f"[LOCK] {operation} rejected for workflow {workflow_id}: busy with {busy_with}")
            raise ConflictError(f"Workflow {workflow_id} is busy ({busy_with} in progress)")
        return handle

    def release(self, workflow_id: str, token: str) -> bool:
        with self._mutex:
            handle = self._held.get(workflow_id)
            if handle is None or handle.token != token:
                return False
            del self._held[workflow_id]
            return True

    def holder(self, workflow_id: str) -> Optional[WorkflowLockHandle]:
        with self._mutex:
            return self._held.get(workflow_id)

    def is_locked(self, workflow_id: str) -> bool:
        return self.holder(workflow_id) is not None
