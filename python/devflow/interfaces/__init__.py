"""devflow interface contracts (Protocol-based dependency injection)."""

from devflow.interfaces.collaborators import (
    CommandResult,
    DebugResult,
    ExecutionPlan,
    FileEditResult,
    ICommandExecutor,
    ICompletionProvider,
    IContextGatherer,
    IFileEditor,
    IPlanner,
    IQualityAnalyzer,
    ITestRunner,
    ProjectContext,
    QualityIssue,
    QualityReport,
    Subtask,
    SubtaskStatus,
    TestFailureDetail,
    TestRunResult,
)
from devflow.interfaces.event_bus import IEventBus, TASK_PROGRESS_TOPIC, WORKFLOW_EVENTS_TOPIC
from devflow.interfaces.state_store import IStateCache, IStateStore, ITaskStatusSink
from devflow.interfaces.transport import IAuthenticator, IListener

__all__ = [
    "CommandResult",
    "DebugResult",
    "ExecutionPlan",
    "FileEditResult",
    "IAuthenticator",
    "ICommandExecutor",
    "ICompletionProvider",
    "IContextGatherer",
    "IEventBus",
    "IFileEditor",
    "IListener",
    "IPlanner",
    "IQualityAnalyzer",
    "IStateCache",
    "IStateStore",
    "ITaskStatusSink",
    "ITestRunner",
    "ProjectContext",
    "QualityIssue",
    "QualityReport",
    "Subtask",
    "SubtaskStatus",
    "TASK_PROGRESS_TOPIC",
    "TestFailureDetail",
    "TestRunResult",
    "WORKFLOW_EVENTS_TOPIC",
]
