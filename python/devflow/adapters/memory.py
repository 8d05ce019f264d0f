"""In-process stores for single-node use and tests."""

import asyncio
import copy
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from devflow.interfaces.collaborators import ExecutionPlan, SubtaskStatus

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStateStore:
    """Durable-store stand-in. Values are kept serialized so callers never share objects."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(task_id)
        return json.loads(raw) if raw is not None else None

    async def upsert(self, task_id: str, state: Dict[str, Any]) -> None:
        self._data[task_id] = json.dumps(state)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._data


class InMemoryStateCache:
    """TTL cache on a monotonic clock."""

    def __init__(self, default_ttl: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(task_id)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del self._data[task_id]
            return None
        return json.loads(raw)

    async def set(self, task_id: str, state: Dict[str, Any], ttl: Optional[int] = None) -> None:
        self._data[task_id] = (self._clock() + (ttl or self.default_ttl), json.dumps(state))

    async def delete(self, task_id: str) -> None:
        self._data.pop(task_id, None)

    def clear(self) -> None:
        self._data.clear()


class InMemoryTaskStatusStore:
    def __init__(self) -> None:
        self._tasks: Dict[str, Dict[str, Any]] = {}

    async def register_task(self, task_id: str, repo_root: str) -> Dict[str, Any]:
        now = _now()
        task = self._tasks.setdefault(task_id, {"task_id": task_id, "created_at": now})
        task.update(repo_root=repo_root, status="RUNNING", updated_at=now, completed_at=None)
        return dict(task)

    async def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        task = self._tasks.get(task_id)
        return dict(task) if task is not None else None

    async def update_task_status(
        self, task_id: str, status: str, completed_at: Optional[datetime] = None
    ) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.debug("Status %s for unregistered task %s ignored", status, task_id)
            return
        task.update(
            status=status,
            updated_at=_now(),
            completed_at=completed_at.isoformat() if completed_at else None,
        )


class InMemoryPlanStore:
    """IPlanner backed by plans registered through put_plan."""

    def __init__(self) -> None:
        self._plans: Dict[str, ExecutionPlan] = {}
        self._owners: Dict[str, str] = {}
        self.subtask_results: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def put_plan(self, task_id: str, plan: Union[ExecutionPlan, Dict[str, Any]]) -> ExecutionPlan:
        if isinstance(plan, dict):
            plan = ExecutionPlan.from_dict(task_id, plan)
        async with self._lock:
            previous = self._plans.get(task_id)
            if previous is not None:
                for subtask in previous.subtasks:
                    self._owners.pop(subtask.id, None)
            self._plans[task_id] = plan
            for subtask in plan.subtasks:
                self._owners[subtask.id] = task_id
        return copy.deepcopy(plan)

    async def get_execution_plan(self, task_id: str) -> Optional[ExecutionPlan]:
        plan = self._plans.get(task_id)
        return copy.deepcopy(plan) if plan is not None else None

    async def update_subtask_status(
        self,
        subtask_id: str,
        status: SubtaskStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        task_id = self._owners.get(subtask_id)
        if task_id is None:
            logger.warning("Status update for unknown subtask %s", subtask_id)
            return
        for subtask in self._plans[task_id].subtasks:
            if subtask.id == subtask_id:
                subtask.status = SubtaskStatus(status)
        self.subtask_results[subtask_id] = {"status": SubtaskStatus(status).value, "output": output, "error": error}
