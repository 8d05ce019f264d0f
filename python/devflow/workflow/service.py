"""Workflow service: fire-and-continue entry point over the orchestrator.

Each started workflow runs as its own asyncio.Task, bounded by a semaphore.
Runs are wrapped in an error boundary so nothing escapes into the event loop.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from devflow.exceptions import (
    AlreadyExistsError,
    InvalidRetryRequestError,
    NotFoundError,
    TaskNotFoundError,
    WorkflowAlreadyExistsError,
    WorkflowNotFoundError,
)
from devflow.interfaces.state_store import ITaskStatusSink
from devflow.workflow.orchestrator import TaskOrchestrator
from devflow.workflow.state_machine import StateMachine

logger = logging.getLogger(__name__)


class WorkflowService:
    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        state_machine: StateMachine,
        task_status: ITaskStatusSink,
        max_concurrent_tasks: int = 4,
    ):
        self.orchestrator = orchestrator
        self.state_machine = state_machine
        self.task_status = task_status
        self._semaphore = asyncio.Semaphore(max_concurrent_tasks)
        self._running: Dict[str, asyncio.Task] = {}

    def is_running(self, task_id: str) -> bool:
        run = self._running.get(task_id)
        return run is not None and not run.done()

    def running_tasks(self) -> List[str]:
        return [task_id for task_id, run in self._running.items() if not run.done()]

    async def start_workflow(self, task_id: str, repo_root: str, *, restart: bool = False) -> Dict[str, Any]:
        """Schedule execute_task and return immediately."""
        if self.is_running(task_id):
            raise AlreadyExistsError(f"Workflow for task {task_id} is already running", details={"task_id": task_id})
        if not restart and await self._workflow_exists(task_id):
            raise WorkflowAlreadyExistsError(task_id)

        await self.task_status.register_task(task_id, repo_root)
        run = asyncio.create_task(self._run(task_id, repo_root, restart), name=f"workflow:{task_id}")
        self._running[task_id] = run
        run.add_done_callback(lambda finished: self._forget(task_id, finished))
        logger.info("Workflow scheduled for task %s (restart=%s)", task_id, restart)

        return {
            "task_id": task_id,
            "status": "started",
            "message": "Workflow execution started",
        }

    async def get_workflow_status(self, task_id: str) -> Dict[str, Any]:
        status = await self.orchestrator.get_task_progress(task_id)
        status["running"] = self.is_running(task_id)
        return status

    async def retry_workflow(self, task_id: str) -> Dict[str, Any]:
        """Explicit external retry: reset the retry budget and run the task again from IDLE."""
        task = await self.task_status.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.get("status") != "FAILED" or self.is_running(task_id):
            raise InvalidRetryRequestError(
                f"Only failed tasks can be retried (task {task_id} is {task.get('status')})",
                details={"task_id": task_id, "status": task.get("status")},
            )

        try:
            await self.state_machine.reset_retries(task_id)
        except WorkflowNotFoundError:
            logger.info("Task %s has no workflow state yet; retry starts fresh", task_id)

        return await self.start_workflow(task_id, task["repo_root"], restart=True)

    async def cancel_workflow(self, task_id: str, timeout: Optional[float] = 10.0) -> Dict[str, Any]:
        run = self._running.get(task_id)
        if run is None or run.done():
            raise NotFoundError(f"No running workflow for task {task_id}", details={"task_id": task_id})

        run.cancel()
        await asyncio.wait([run], timeout=timeout)
        logger.info("Workflow for task %s cancelled", task_id)
        return {"task_id": task_id, "status": "cancelled"}

    async def shutdown(self) -> None:
        runs = [run for run in self._running.values() if not run.done()]
        for run in runs:
            run.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
        self._running.clear()
        logger.info("Workflow service stopped (%d run(s) cancelled)", len(runs))

    async def _run(self, task_id: str, repo_root: str, restart: bool) -> None:
        started = False
        try:
            async with self._semaphore:
                started = True
                await self.orchestrator.execute_task(task_id, repo_root, restart=restart)
        except asyncio.CancelledError:
            if not started:
                # Cancelled while queued: no workflow state was touched.
                await self.task_status.update_task_status(task_id, "FAILED")
            raise
        except WorkflowAlreadyExistsError as exc:
            logger.error("Workflow for task %s not started: %s", task_id, exc.message)
            await self.task_status.update_task_status(task_id, "FAILED")
        except Exception as exc:
            logger.exception("Workflow execution failed for task %s", task_id)
            try:
                await self.orchestrator.handle_task_failure(task_id, exc)
            except Exception:
                logger.exception("Failure handling failed for task %s", task_id)

    async def _workflow_exists(self, task_id: str) -> bool:
        try:
            await self.state_machine.get_state(task_id)
        except WorkflowNotFoundError:
            return False
        return True

    def _forget(self, task_id: str, finished: asyncio.Task) -> None:
        if self._running.get(task_id) is finished:
            del self._running[task_id]
