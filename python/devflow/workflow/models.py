"""Workflow state model: states, transition table, progress mapping and the
serializable per-task record owned by the state machine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class WorkflowStateName(str, Enum):
    IDLE = "IDLE"
    PLANNING = "PLANNING"
    EXECUTING = "EXECUTING"
    TESTING = "TESTING"
    DEBUGGING = "DEBUGGING"
    RETRYING = "RETRYING"
    DELIVERING = "DELIVERING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


S = WorkflowStateName

VALID_TRANSITIONS: Dict[WorkflowStateName, FrozenSet[WorkflowStateName]] = {
    S.IDLE: frozenset({S.PLANNING}),
    S.PLANNING: frozenset({S.EXECUTING, S.FAILED}),
    S.EXECUTING: frozenset({S.TESTING, S.DELIVERING, S.DEBUGGING, S.FAILED}),
    S.TESTING: frozenset({S.DEBUGGING, S.DELIVERING, S.FAILED}),
    S.DEBUGGING: frozenset({S.EXECUTING, S.RETRYING, S.FAILED}),
    S.RETRYING: frozenset({S.EXECUTING, S.FAILED}),
    S.DELIVERING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset({S.RETRYING}),
}

# FAILED is absent on purpose: it keeps the previous value.
STATE_PROGRESS: Dict[WorkflowStateName, int] = {
    S.IDLE: 0,
    S.PLANNING: 10,
    S.EXECUTING: 40,
    S.DEBUGGING: 50,
    S.RETRYING: 45,
    S.TESTING: 60,
    S.DELIVERING: 85,
    S.COMPLETED: 100,
}


def can_transition(from_state: WorkflowStateName, to_state: WorkflowStateName) -> bool:
    return WorkflowStateName(to_state) in VALID_TRANSITIONS.get(WorkflowStateName(from_state), frozenset())


def compute_progress(to_state: WorkflowStateName, previous: int) -> int:
    return STATE_PROGRESS.get(WorkflowStateName(to_state), previous)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateTransition:
    """One accepted transition, as recorded in the workflow history."""
    from_state: WorkflowStateName
    to_state: WorkflowStateName
    event: str
    metadata: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "event": self.event,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "StateTransition":
        return StateTransition(
            from_state=WorkflowStateName(data["from"]),
            to_state=WorkflowStateName(data["to"]),
            event=data["event"],
            metadata=data.get("metadata"),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass
class WorkflowState:
    """Per-task workflow record. Mutated only by the state machine."""
    task_id: str
    current_state: WorkflowStateName = WorkflowStateName.IDLE
    current_subtask_id: Optional[str] = None
    progress: int = 0
    history: List[StateTransition] = field(default_factory=list)
    retry_count: int = 0
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.current_state]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "current_state": self.current_state.value,
            "current_subtask_id": self.current_subtask_id,
            "progress": self.progress,
            "history": [t.to_dict() for t in self.history],
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "WorkflowState":
        return WorkflowState(
            task_id=data["task_id"],
            current_state=WorkflowStateName(data["current_state"]),
            current_subtask_id=data.get("current_subtask_id"),
            progress=int(data.get("progress", 0)),
            history=[StateTransition.from_dict(t) for t in data.get("history") or []],
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or utc_now_iso(),
            updated_at=data.get("updated_at") or utc_now_iso(),
        )
