"""
Workflow state machine.

Owns the WorkflowState of every task: validates transitions against the
transition table, keeps the append-only history, computes progress and
retry bookkeeping, persists to the durable store (authoritative) and the
cache (advisory), and publishes every accepted transition to the event bus.

Write ordering per transition: store upsert, then best-effort cache refresh,
then event publish. A transition is never published before it is durable.
"""

import asyncio
import logging
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from devflow.exceptions import (
    DevflowException,
    EventBusUnavailableError,
    InvalidTransitionError,
    StoreUnavailableError,
    WorkflowAlreadyExistsError,
    WorkflowNotFoundError,
)
from devflow.interfaces.event_bus import IEventBus, WORKFLOW_EVENTS_TOPIC
from devflow.interfaces.state_store import IStateCache, IStateStore, ITaskStatusSink
from devflow.workflow.models import (
    StateTransition,
    WorkflowState,
    WorkflowStateName,
    can_transition,
    compute_progress,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

STATE_TRANSITION_EVENT = "STATE_TRANSITION"


# ── Transition metadata ──────────────────────────────────────────────


@dataclass(frozen=True)
class TransitionInfo:
    """Structured metadata attached to a transition."""

    def to_metadata(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class FailureInfo(TransitionInfo):
    error: str
    kind: str = "error"


@dataclass(frozen=True)
class RetryInfo(TransitionInfo):
    error: str
    retry_count: int
    max_retries: Optional[int] = None


@dataclass(frozen=True)
class CompletionInfo(TransitionInfo):
    result: Optional[str] = None


Metadata = Union[TransitionInfo, Mapping[str, Any], None]


def _metadata_dict(metadata: Metadata) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    if isinstance(metadata, TransitionInfo):
        return metadata.to_metadata()
    return dict(metadata)


class StateMachine:
    """Validated, persistent, per-task workflow state machine."""

    def __init__(
        self,
        store: IStateStore,
        cache: Optional[IStateCache] = None,
        event_bus: Optional[IEventBus] = None,
        task_status: Optional[ITaskStatusSink] = None,
        cache_ttl: int = 3600,
    ):
        self._store = store
        self._cache = cache
        self._event_bus = event_bus
        self._task_status = task_status
        self._cache_ttl = cache_ttl
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        return lock

    # ── Public operations ────────────────────────────────────────────

    async def initialize_workflow(self, task_id: str, overwrite: bool = False) -> WorkflowState:
        """Create the IDLE record for a task.

        Raises WorkflowAlreadyExistsError when a record exists, unless
        overwrite is set (explicit restart); a restart keeps last_error.
        """
        async with self._lock(task_id):
            existing = await self._read(task_id)
            if existing is not None and not overwrite:
                raise WorkflowAlreadyExistsError(task_id)

            state = WorkflowState(task_id=task_id)
            if existing is not None:
                state.last_error = existing.last_error
                state.created_at = existing.created_at
            await self._persist(state)
            logger.info("Workflow initialized for task %s (overwrite=%s)", task_id, overwrite)
            return state

    async def get_state(self, task_id: str) -> WorkflowState:
        """Cache-first read, falling back to the durable store."""
        state = await self._read(task_id)
        if state is None:
            raise WorkflowNotFoundError(task_id)
        return state

    async def transition(
        self,
        task_id: str,
        to_state: WorkflowStateName,
        event: str,
        metadata: Metadata = None,
    ) -> WorkflowState:
        try:
            target = WorkflowStateName(to_state)
        except ValueError:
            current = await self.get_state(task_id)
            raise InvalidTransitionError(current.current_state, to_state) from None
        return await self._transition(task_id, target, event, metadata)

    async def mark_failed(self, task_id: str, error: str, kind: str = "error") -> WorkflowState:
        """Record the error and move to FAILED, then signal the task status sink."""

        def set_error(state: WorkflowState) -> None:
            state.last_error = error

        state = await self._transition(
            task_id,
            WorkflowStateName.FAILED,
            "ERROR",
            FailureInfo(error=error, kind=kind),
            before_persist=set_error,
        )
        await self._signal_task_status(task_id, "FAILED")
        return state

    async def mark_completed(self, task_id: str, result: Optional[str] = None) -> WorkflowState:
        state = await self._transition(
            task_id, WorkflowStateName.COMPLETED, "COMPLETE", CompletionInfo(result=result)
        )
        await self._signal_task_status(task_id, "SUCCESS", completed_at=datetime.now(timezone.utc))
        return state

    async def record_error(self, task_id: str, error: str) -> WorkflowState:
        """Overwrite last_error on a workflow that is already FAILED (no transition)."""
        state = await self._update(task_id, lambda s: setattr(s, "last_error", error))
        await self._signal_task_status(task_id, "FAILED")
        return state

    async def increment_retry(self, task_id: str) -> int:
        """Bookkeeping only: no transition, no event."""

        def bump(state: WorkflowState) -> None:
            state.retry_count += 1

        state = await self._update(task_id, bump)
        return state.retry_count

    async def reset_retries(self, task_id: str) -> WorkflowState:
        return await self._update(task_id, lambda s: setattr(s, "retry_count", 0))

    async def set_current_subtask(self, task_id: str, subtask_id: Optional[str]) -> WorkflowState:
        return await self._update(task_id, lambda s: setattr(s, "current_subtask_id", subtask_id))

    # ── Internals ────────────────────────────────────────────────────

    async def _transition(
        self,
        task_id: str,
        to_state: WorkflowStateName,
        event: str,
        metadata: Metadata,
        before_persist: Optional[Callable[[WorkflowState], None]] = None,
    ) -> WorkflowState:
        async with self._lock(task_id):
            # get_state returns a private copy; a rejected or failed write leaves
            # the stored record untouched.
            state = await self.get_state(task_id)
            from_state = state.current_state
            if not can_transition(from_state, to_state):
                raise InvalidTransitionError(from_state, to_state)

            meta = _metadata_dict(metadata)
            record = StateTransition(from_state=from_state, to_state=to_state, event=event, metadata=meta)
            state.history.append(record)
            state.current_state = to_state
            if meta:
                state.metadata.update(meta)
            state.progress = compute_progress(to_state, state.progress)
            state.updated_at = record.timestamp
            if before_persist is not None:
                before_persist(state)

            await self._persist(state)
            await self._publish(task_id, record, state)
            logger.info(
                "Task %s: %s -> %s (%s), progress=%d",
                task_id, from_state.value, to_state.value, event, state.progress,
            )
            return state

    async def _update(self, task_id: str, mutate: Callable[[WorkflowState], None]) -> WorkflowState:
        async with self._lock(task_id):
            state = await self.get_state(task_id)
            mutate(state)
            state.updated_at = utc_now_iso()
            await self._persist(state)
            return state

    async def _read(self, task_id: str) -> Optional[WorkflowState]:
        if self._cache is not None:
            try:
                cached = await self._cache.get(task_id)
                if cached is not None:
                    return WorkflowState.from_dict(cached)
            except (KeyError, ValueError, TypeError):
                logger.warning("Discarding unreadable cached state for task %s", task_id)
            except Exception:
                logger.warning("State cache read failed for task %s; using store", task_id, exc_info=True)

        try:
            stored = await self._store.get(task_id)
        except DevflowException:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Failed to read workflow state for {task_id}: {exc}") from exc
        if stored is None:
            return None

        state = WorkflowState.from_dict(stored)
        await self._refresh_cache(state)
        return state

    async def _persist(self, state: WorkflowState) -> None:
        data = state.to_dict()
        try:
            await self._store.upsert(state.task_id, data)
        except DevflowException:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"Failed to persist workflow state for {state.task_id}: {exc}") from exc
        await self._refresh_cache(state)

    async def _refresh_cache(self, state: WorkflowState) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(state.task_id, state.to_dict(), ttl=self._cache_ttl)
        except Exception:
            logger.warning("State cache write failed for task %s", state.task_id, exc_info=True)

    async def _publish(self, task_id: str, record: StateTransition, state: WorkflowState) -> None:
        if self._event_bus is None:
            return
        message = {
            "type": STATE_TRANSITION_EVENT,
            "task_id": task_id,
            "transition": record.to_dict(),
            "progress": state.progress,
            "timestamp": utc_now_iso(),
        }
        try:
            await self._event_bus.publish(WORKFLOW_EVENTS_TOPIC, message)
        except Exception as exc:
            raise EventBusUnavailableError(f"Failed to publish transition for {task_id}: {exc}") from exc

    async def _signal_task_status(
        self, task_id: str, status: str, completed_at: Optional[datetime] = None
    ) -> None:
        if self._task_status is None:
            return
        await self._task_status.update_task_status(task_id, status, completed_at=completed_at)
