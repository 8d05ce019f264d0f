"""
Unified error hierarchy for devflow.

Every error raised by the workflow core derives from DevflowException and
carries an ErrorContext (category, severity, HTTP status, recoverability)
so the API layer and progress messages can report it consistently.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # System failure, immediate attention required
    ERROR = "error"            # Operation failure, user impacted
    WARNING = "warning"        # Degraded operation, user should be aware
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    STATE = "state"                     # Workflow state machine violations
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXECUTION = "execution"             # Subtask / command / test failures
    DATABASE = "database"
    CACHE = "cache"
    EVENT_BUS = "event_bus"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


# ============================================================================
# Error context
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace for API responses)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }


# ============================================================================
# Exception Hierarchy
# ============================================================================

class DevflowException(Exception):
    """Base exception for all devflow errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        http_status: int = 500,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.http_status = http_status
        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            stack_trace=traceback.format_exc(),
            is_recoverable=is_recoverable,
            http_status=http_status,
        )
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()


# ============================================================================
# State machine errors
# ============================================================================

class InvalidTransitionError(DevflowException):
    """Attempted state change is not in the transition table."""
    def __init__(self, from_state: Any, to_state: Any, **kwargs):
        self.from_state = getattr(from_state, "value", from_state)
        self.to_state = getattr(to_state, "value", to_state)
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 409)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"from": self.from_state, "to": self.to_state})
        super().__init__(f"Invalid transition from {self.from_state} to {self.to_state}", **kwargs)


class NotFoundError(DevflowException):
    """Referenced task, plan or workflow state does not exist."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 404)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class WorkflowNotFoundError(NotFoundError):
    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"Workflow state not found for task {task_id}", **kwargs)


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"Task {task_id} not found", **kwargs)


class NoPlanFoundError(NotFoundError):
    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"No execution plan found for task {task_id}", **kwargs)


class AlreadyExistsError(DevflowException):
    """Resource already exists and will not be overwritten implicitly."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 409)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class WorkflowAlreadyExistsError(AlreadyExistsError):
    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"Workflow already initialized for task {task_id}", **kwargs)


class InvalidRetryRequestError(DevflowException):
    """An explicit retry was requested for a task that has not failed."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 409)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Execution errors
# ============================================================================

class SubtaskFailureError(DevflowException):
    """File edits, commands or verification of a subtask failed."""
    def __init__(self, message: str, subtask_id: Optional[str] = None, **kwargs):
        self.subtask_id = subtask_id
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("details", {"subtask_id": subtask_id})
        super().__init__(message, **kwargs)


class CommandFailureError(SubtaskFailureError):
    def __init__(self, command: str, stderr: str = "", subtask_id: Optional[str] = None, **kwargs):
        self.command = command
        self.stderr = stderr
        kwargs.setdefault("details", {"subtask_id": subtask_id, "command": command})
        super().__init__(f"Command failed: {command}\nError: {stderr}", subtask_id=subtask_id, **kwargs)


class TestFailureError(DevflowException):
    """The test suite reported failing tests."""
    __test__ = False

    def __init__(self, failed: int, total: int = 0, **kwargs):
        self.failed = failed
        self.total = total
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("details", {"failed": failed, "total": total})
        super().__init__(f"Tests failed with {failed} failures", **kwargs)


class RetryExhaustedError(DevflowException):
    """The task failed more often than the configured retry budget allows."""
    def __init__(self, task_id: str, retry_count: int, max_retries: int, **kwargs):
        self.task_id = task_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        kwargs.setdefault("category", ErrorCategory.EXECUTION)
        kwargs.setdefault("is_recoverable", False)
        kwargs.setdefault("details", {"task_id": task_id, "retry_count": retry_count, "max_retries": max_retries})
        super().__init__(f"Retries exhausted for task {task_id} ({retry_count}/{max_retries})", **kwargs)


class TaskCancelledError(DevflowException):
    """A running workflow was cancelled from outside."""
    def __init__(self, task_id: str, **kwargs):
        self.task_id = task_id
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("details", {"task_id": task_id})
        super().__init__(f"cancelled: workflow for task {task_id} was cancelled", **kwargs)


# ============================================================================
# Collaborator errors
# ============================================================================

class CollaboratorUnavailableError(DevflowException):
    """A required external service could not be reached."""
    def __init__(self, collaborator: str, message: str = "", **kwargs):
        self.collaborator = collaborator
        kwargs.setdefault("http_status", 503)
        kwargs.setdefault("details", {"collaborator": collaborator})
        super().__init__(message or f"{collaborator} is unavailable", **kwargs)


class StoreUnavailableError(CollaboratorUnavailableError):
    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("category", ErrorCategory.DATABASE)
        super().__init__("state-store", message, **kwargs)


class CacheUnavailableError(CollaboratorUnavailableError):
    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("category", ErrorCategory.CACHE)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        super().__init__("state-cache", message, **kwargs)


class EventBusUnavailableError(CollaboratorUnavailableError):
    def __init__(self, message: str = "", **kwargs):
        kwargs.setdefault("category", ErrorCategory.EVENT_BUS)
        super().__init__("event-bus", message, **kwargs)


class AuthenticationError(DevflowException):
    """Authentication error (invalid credentials)."""
    def __init__(self, message: str = "Authentication failed", **kwargs):
        kwargs.setdefault("category", ErrorCategory.AUTHENTICATION)
        kwargs.setdefault("http_status", 401)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "DevflowException",
    "InvalidTransitionError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "TaskNotFoundError",
    "NoPlanFoundError",
    "AlreadyExistsError",
    "WorkflowAlreadyExistsError",
    "InvalidRetryRequestError",
    "SubtaskFailureError",
    "CommandFailureError",
    "TestFailureError",
    "RetryExhaustedError",
    "TaskCancelledError",
    "CollaboratorUnavailableError",
    "StoreUnavailableError",
    "CacheUnavailableError",
    "EventBusUnavailableError",
    "AuthenticationError",
]
