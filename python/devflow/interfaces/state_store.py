"""Interfaces for workflow state persistence.

The durable store is authoritative; the cache is an advisory, replaceable
copy with a TTL. Both exchange the plain-dict form of a WorkflowState.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Protocol


class IStateStore(Protocol):
    """Durable workflow state keyed by task id."""

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored state or None when absent."""
        ...

    async def upsert(self, task_id: str, state: Dict[str, Any]) -> None:
        """Insert or replace the stored state."""
        ...


class IStateCache(Protocol):
    """Low-latency key-value cache with TTL."""

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, task_id: str, state: Dict[str, Any], ttl: Optional[int] = None) -> None:
        ...

    async def delete(self, task_id: str) -> None:
        ...


class ITaskStatusSink(Protocol):
    """Task-level status kept outside the workflow state (e.g. the task table)."""

    async def register_task(self, task_id: str, repo_root: str) -> Dict[str, Any]:
        ...

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        completed_at: Optional[datetime] = None,
    ) -> None:
        ...
