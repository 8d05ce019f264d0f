"""
Task orchestrator.

Drives one task through its phases (context → planning → subtasks →
quality → tests → delivery) on top of the workflow state machine, and turns
failures into bounded retry bookkeeping or terminal failure.

Correctness-critical collaborators (planner, file editor, command executor,
test runner, state persistence) propagate their errors into
handle_task_failure. Best-effort ones (context gathering, quality analysis and
formatting, progress delivery) are logged and never abort a phase.
"""

import asyncio
import logging
import os
import re
import time
from dataclasses import asdict
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from devflow.enhanced_logging import set_task_context, track_performance
from devflow.exceptions import (
    NoPlanFoundError,
    RetryExhaustedError,
    SubtaskFailureError,
    CommandFailureError,
    TaskCancelledError,
    TaskNotFoundError,
    TestFailureError,
    WorkflowNotFoundError,
)
from devflow.interfaces.collaborators import (
    ICommandExecutor,
    IContextGatherer,
    IFileEditor,
    IPlanner,
    IQualityAnalyzer,
    ITestRunner,
    QualityReport,
    Subtask,
    SubtaskStatus,
)
from devflow.interfaces.event_bus import IEventBus, TASK_PROGRESS_TOPIC
from devflow.interfaces.state_store import ITaskStatusSink
from devflow.workflow.models import WorkflowState, WorkflowStateName, utc_now_iso
from devflow.workflow.state_machine import RetryInfo, StateMachine

if TYPE_CHECKING:
    from devflow.gateway.fanout import EventFanOutGateway

logger = logging.getLogger(__name__)

S = WorkflowStateName

_FILE_EXISTS = re.compile(r"^\s*file exists:\s*(?P<path>.+?)\s*$", re.IGNORECASE)
_MAX_REVIEW_ISSUES = 20


def error_message(error: BaseException) -> str:
    return getattr(error, "message", None) or str(error) or type(error).__name__


class TaskOrchestrator:
    """Runs tasks end-to-end against the injected collaborators."""

    def __init__(
        self,
        state_machine: StateMachine,
        planner: IPlanner,
        file_editor: IFileEditor,
        command_executor: ICommandExecutor,
        test_runner: ITestRunner,
        quality_analyzer: Optional[IQualityAnalyzer] = None,
        context_gatherer: Optional[IContextGatherer] = None,
        event_bus: Optional[IEventBus] = None,
        gateway: Optional["EventFanOutGateway"] = None,
        task_status: Optional[ITaskStatusSink] = None,
        max_retries: int = 3,
        quality_format_threshold: int = 60,
    ):
        self.state_machine = state_machine
        self.planner = planner
        self.file_editor = file_editor
        self.command_executor = command_executor
        self.test_runner = test_runner
        self.quality_analyzer = quality_analyzer
        self.context_gatherer = context_gatherer
        self.event_bus = event_bus
        self.gateway = gateway
        self.task_status = task_status
        self.max_retries = max_retries
        self.quality_format_threshold = quality_format_threshold

    # ── Task lifecycle ───────────────────────────────────────────────

    @track_performance(operation="orchestrator.execute_task")
    async def execute_task(self, task_id: str, repo_root: str, *, restart: bool = False) -> WorkflowState:
        """Run every phase for task_id.

        Returns the final WorkflowState (COMPLETED or FAILED). Initialization
        errors propagate; any later failure is routed to handle_task_failure.
        ``restart`` re-initializes an existing workflow (explicit retry).
        """
        set_task_context(task_id)
        started = time.monotonic()
        await self.state_machine.initialize_workflow(task_id, overwrite=restart)
        await self._notify("emit_task_status", task_id, "initialized", {"restart": restart})

        try:
            context_summary = await self._gather_context(task_id, repo_root)

            planning_meta = {"context_summary": context_summary} if context_summary else None
            await self.state_machine.transition(task_id, S.PLANNING, "START_PLANNING", planning_meta)
            await self.publish_progress(task_id, "Planning task execution with project context...")
            plan = await self.planner.get_execution_plan(task_id)
            if plan is None:
                raise NoPlanFoundError(task_id)
            await self.publish_progress(task_id, f"Plan created with {len(plan.subtasks)} subtasks")

            await self.state_machine.transition(task_id, S.EXECUTING, "START_EXECUTION")
            for subtask in plan.subtasks:
                await self.execute_subtask(task_id, subtask, repo_root)

            quality = await self._check_quality(task_id, repo_root)

            await self.state_machine.transition(task_id, S.TESTING, "START_TESTING")
            await self.publish_progress(task_id, "Running test suite...")
            result = await self.test_runner.run_tests(task_id, repo_root)
            await self._notify(
                "emit_command_result",
                task_id,
                f"{result.framework} tests",
                1 if result.failed > 0 else 0,
                f"Passed: {result.passed}, Failed: {result.failed}, Skipped: {result.skipped}",
                "\n".join(f.message for f in result.failures),
                result.duration_ms,
            )
            if result.failed > 0:
                await self.publish_progress(task_id, f"Tests failed: {result.failed} failures")
                raise TestFailureError(result.failed, result.total)
            await self.publish_progress(task_id, f"All tests passed! ({result.passed}/{result.total})")
            if result.coverage and "lines" in result.coverage:
                await self.publish_progress(task_id, f"Code coverage: {result.coverage['lines']}% lines")

            await self.state_machine.transition(task_id, S.DELIVERING, "START_DELIVERY")
            await self.publish_progress(task_id, "Delivering changes...")
            state = await self.state_machine.mark_completed(task_id, "Task completed successfully")

            duration_ms = int((time.monotonic() - started) * 1000)
            await self.publish_progress(
                task_id, f"Task completed successfully in {round(duration_ms / 1000)}s", 100
            )
            await self._notify(
                "emit_task_status",
                task_id,
                "completed",
                {
                    "duration_ms": duration_ms,
                    "quality_score": quality.score if quality else None,
                    "tests_passed": result.passed,
                    "coverage": result.coverage,
                },
            )
            return state

        except asyncio.CancelledError:
            await self._handle_cancellation(task_id)
            raise
        except Exception as exc:
            logger.error("Task %s failed: %s", task_id, error_message(exc))
            return await self.handle_task_failure(task_id, exc)

    @track_performance(operation="orchestrator.execute_subtask")
    async def execute_subtask(self, task_id: str, subtask: Subtask, repo_root: str) -> None:
        """Apply a subtask's file edits, run its commands and verify it.

        Edits that already succeeded are not rolled back when a sibling edit
        fails. The subtask is marked FAILED and the error re-raised.
        """
        await self.publish_progress(task_id, f"Executing: {subtask.description}")
        await self.state_machine.set_current_subtask(task_id, subtask.id)
        try:
            await self.planner.update_subtask_status(subtask.id, SubtaskStatus.RUNNING)

            if subtask.files_to_edit:
                await self.publish_progress(task_id, f"Modifying {len(subtask.files_to_edit)} file(s)...")
                await self._apply_file_edits(task_id, subtask, repo_root)

            if subtask.commands_to_run:
                await self.publish_progress(task_id, f"Running {len(subtask.commands_to_run)} command(s)...")
                for command in subtask.commands_to_run:
                    result = await self.command_executor.run_with_auto_debug(
                        task_id, command, repo_root, subtask.description
                    )
                    if not result.success:
                        raise CommandFailureError(command, result.final_output.stderr, subtask_id=subtask.id)

            if not await self._verify_subtask(subtask, repo_root):
                raise SubtaskFailureError("Subtask verification failed", subtask_id=subtask.id)

            await self.planner.update_subtask_status(subtask.id, SubtaskStatus.SUCCESS)
            await self.publish_progress(task_id, f"Completed: {subtask.description}")

        except (Exception, asyncio.CancelledError) as exc:
            message = "cancelled" if isinstance(exc, asyncio.CancelledError) else error_message(exc)
            try:
                await self.planner.update_subtask_status(subtask.id, SubtaskStatus.FAILED, error=message)
            except Exception:
                logger.exception("Could not mark subtask %s FAILED", subtask.id)
            raise
        finally:
            await self.state_machine.set_current_subtask(task_id, None)

    async def handle_task_failure(self, task_id: str, error: BaseException) -> WorkflowState:
        """Record a failure and leave the workflow FAILED.

        Below the retry budget the workflow passes through RETRYING first (via
        DEBUGGING when coming from EXECUTING or TESTING); it is not resumed.
        Resumption is an explicit external retry. Once the budget is spent the
        count stays at max_retries and the workflow goes straight to FAILED.
        """
        message = error_message(error)
        state = await self.state_machine.get_state(task_id)
        if state.current_state is S.COMPLETED:
            logger.warning("Ignoring failure for completed task %s: %s", task_id, message)
            return state

        if state.retry_count < self.max_retries:
            retry_count = await self.state_machine.increment_retry(task_id)
        else:
            retry_count = state.retry_count

        if retry_count < self.max_retries:
            await self.publish_progress(task_id, f"Task failed, retrying ({retry_count}/{self.max_retries})...")
            state = await self._enter_retrying(task_id, message, retry_count)
            final = await self._settle_failed(task_id, state, message)
        else:
            exhausted = RetryExhaustedError(task_id, retry_count, self.max_retries)
            await self.publish_progress(
                task_id, f"Task failed: {message}", details={"error": exhausted.message}
            )
            final = await self._settle_failed(task_id, await self.state_machine.get_state(task_id), message)
            await self._notify("emit_error", task_id, message, False)
        return final

    async def _handle_cancellation(self, task_id: str) -> None:
        error = TaskCancelledError(task_id)
        logger.warning("Task %s cancelled", task_id)
        try:
            state = await self.state_machine.get_state(task_id)
            await self._settle_failed(task_id, state, error.message, kind="cancelled")
            await self.publish_progress(task_id, f"Task failed: {error.message}")
            await self._notify("emit_error", task_id, error.message, True)
        except Exception:
            logger.exception("Could not record cancellation for task %s", task_id)

    async def _enter_retrying(self, task_id: str, message: str, retry_count: int) -> WorkflowState:
        state = await self.state_machine.get_state(task_id)
        current = state.current_state
        if current in (S.EXECUTING, S.TESTING):
            state = await self.state_machine.transition(task_id, S.DEBUGGING, "DEBUG", {"error": message})
            current = state.current_state
        if current in (S.DEBUGGING, S.FAILED):
            info = RetryInfo(error=message, retry_count=retry_count, max_retries=self.max_retries)
            state = await self.state_machine.transition(task_id, S.RETRYING, "RETRY", info)
        return state

    async def _settle_failed(
        self, task_id: str, state: WorkflowState, message: str, kind: str = "error"
    ) -> WorkflowState:
        current = state.current_state
        if current is S.COMPLETED:
            return state
        if current is S.FAILED:
            return await self.state_machine.record_error(task_id, message)
        if current is S.IDLE:
            await self.state_machine.transition(task_id, S.PLANNING, "ABORT")
        return await self.state_machine.mark_failed(task_id, message, kind=kind)

    # ── Phase helpers ────────────────────────────────────────────────

    async def _gather_context(self, task_id: str, repo_root: str) -> Optional[str]:
        if self.context_gatherer is None:
            return None
        await self.publish_progress(task_id, "Gathering project context...")
        try:
            context = await self.context_gatherer.gather_project_context(repo_root)
        except Exception:
            logger.warning("Context gathering failed for task %s", task_id, exc_info=True)
            await self.publish_progress(task_id, "Project context unavailable, continuing")
            return None
        await self.publish_progress(task_id, f"Context gathered: {len(context.files)} files analyzed")
        return context.summary()

    async def _check_quality(self, task_id: str, repo_root: str) -> Optional[QualityReport]:
        if self.quality_analyzer is None:
            return None
        await self.publish_progress(task_id, "Analyzing code quality...")
        try:
            report = await self.quality_analyzer.analyze_code(repo_root)
        except Exception:
            logger.warning("Code quality analysis failed for task %s", task_id, exc_info=True)
            return None

        await self._notify(
            "emit_code_review",
            task_id,
            "overall",
            [asdict(issue) for issue in report.issues[:_MAX_REVIEW_ISSUES]],
            list(report.suggestions),
        )
        await self.publish_progress(task_id, f"Code quality score: {report.score}/100")

        if report.score >= self.quality_format_threshold:
            try:
                await self.quality_analyzer.format_code(repo_root)
                await self.publish_progress(task_id, "Code formatted")
            except Exception:
                logger.warning("Auto-format failed for task %s", task_id, exc_info=True)
        return report

    async def _apply_file_edits(self, task_id: str, subtask: Subtask, repo_root: str) -> None:
        description = subtask.code_changes or "Apply changes as planned"
        paths = [os.path.join(repo_root, p) for p in subtask.files_to_edit]
        results = await asyncio.gather(
            *(self.file_editor.apply_change(path, description) for path in paths),
            return_exceptions=True,
        )

        failures: List[str] = []
        for path, result in zip(paths, results):
            if isinstance(result, BaseException):
                failures.append(f"{path}: {error_message(result)}")
            elif not result.success:
                failures.append(f"{path}: {result.error or 'edit rejected'}")
            else:
                await self._notify("emit_file_change", task_id, path, "update", result.new_content)

        if failures:
            raise SubtaskFailureError(
                f"File edits failed ({len(failures)}/{len(paths)}): " + "; ".join(failures),
                subtask_id=subtask.id,
            )

    async def _verify_subtask(self, subtask: Subtask, repo_root: str) -> bool:
        for condition in subtask.success_conditions:
            match = _FILE_EXISTS.match(condition)
            if match is None:
                logger.debug("Advisory success condition for %s: %s", subtask.id, condition)
                continue
            path = os.path.join(repo_root, match.group("path"))
            if not os.path.exists(path):
                logger.warning("Subtask %s: expected file missing: %s", subtask.id, path)
                return False
        return True

    # ── Progress ─────────────────────────────────────────────────────

    async def publish_progress(
        self,
        task_id: str,
        message: str,
        progress: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send a progress message on the bus and directly to the gateway. Never raises."""
        timestamp = utc_now_iso()
        logger.info("[%s] %s", task_id, message)

        if self.event_bus is not None:
            payload: Dict[str, Any] = {
                "task_id": task_id,
                "message": message,
                "progress": progress,
                "timestamp": timestamp,
            }
            if details:
                payload["details"] = details
            try:
                await self.event_bus.publish(TASK_PROGRESS_TOPIC, payload)
            except Exception:
                logger.warning("Progress publish to event bus failed for task %s", task_id, exc_info=True)

        await self._notify("emit_task_progress", task_id, message, progress, timestamp, details)

    async def _notify(self, method: str, *args: Any) -> None:
        if self.gateway is None:
            return
        try:
            await getattr(self.gateway, method)(*args)
        except Exception:
            logger.warning("Gateway %s failed", method, exc_info=True)

    # ── Queries ──────────────────────────────────────────────────────

    async def get_task_progress(self, task_id: str) -> Dict[str, Any]:
        task = await self.task_status.get_task(task_id) if self.task_status is not None else None
        try:
            state: Optional[WorkflowState] = await self.state_machine.get_state(task_id)
        except WorkflowNotFoundError:
            if task is None:
                raise TaskNotFoundError(task_id) from None
            state = None

        plan = await self.planner.get_execution_plan(task_id)
        subtasks = plan.subtasks if plan is not None else []
        by_status: Dict[str, int] = {s.value: 0 for s in SubtaskStatus}
        for subtask in subtasks:
            by_status[SubtaskStatus(subtask.status).value] += 1

        if task is not None:
            status = task.get("status")
        elif state is not None:
            status = state.current_state.value
        else:
            status = None

        return {
            "task_id": task_id,
            "status": status,
            "current_state": state.current_state.value if state else None,
            "progress": state.progress if state else 0,
            "current_subtask_id": state.current_subtask_id if state else None,
            "completed_subtasks": by_status[SubtaskStatus.SUCCESS.value],
            "failed_subtasks": by_status[SubtaskStatus.FAILED.value],
            "total_subtasks": len(subtasks),
            "subtasks_by_status": by_status,
            "history": [t.to_dict() for t in state.history] if state else [],
            "retry_count": state.retry_count if state else 0,
            "last_error": state.last_error if state else None,
        }
