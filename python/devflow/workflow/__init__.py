"""devflow workflow core: state machine, task orchestrator and scheduler."""

from devflow.workflow.models import (
    STATE_PROGRESS,
    VALID_TRANSITIONS,
    StateTransition,
    WorkflowState,
    WorkflowStateName,
    can_transition,
    compute_progress,
)
from devflow.workflow.orchestrator import TaskOrchestrator
from devflow.workflow.service import WorkflowService
from devflow.workflow.state_machine import (
    CompletionInfo,
    FailureInfo,
    RetryInfo,
    StateMachine,
    TransitionInfo,
)

__all__ = [
    "STATE_PROGRESS",
    "VALID_TRANSITIONS",
    "CompletionInfo",
    "FailureInfo",
    "RetryInfo",
    "StateMachine",
    "StateTransition",
    "TaskOrchestrator",
    "TransitionInfo",
    "WorkflowService",
    "WorkflowState",
    "WorkflowStateName",
    "can_transition",
    "compute_progress",
]
