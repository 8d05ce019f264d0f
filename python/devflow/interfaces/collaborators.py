"""Interfaces for the external collaborators driven by the task orchestrator.

Defines the contract for planning, file editing, command execution, testing,
code quality and context gathering, plus the value objects they exchange.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


class SubtaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class Subtask:
    """One step of an execution plan."""
    id: str
    description: str
    files_to_edit: List[str] = field(default_factory=list)
    commands_to_run: List[str] = field(default_factory=list)
    success_conditions: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    code_changes: Optional[str] = None
    status: SubtaskStatus = SubtaskStatus.PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subtask":
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            files_to_edit=list(data.get("files_to_edit") or []),
            commands_to_run=list(data.get("commands_to_run") or []),
            success_conditions=list(data.get("success_conditions") or []),
            dependencies=list(data.get("dependencies") or []),
            code_changes=data.get("code_changes"),
            status=SubtaskStatus(data.get("status", SubtaskStatus.PENDING.value)),
        )


@dataclass
class ExecutionPlan:
    """Ordered subtasks for one task. Read-only to the orchestrator."""
    task_id: str
    subtasks: List[Subtask] = field(default_factory=list)

    @classmethod
    def from_dict(cls, task_id: str, data: Dict[str, Any]) -> "ExecutionPlan":
        return cls(
            task_id=task_id,
            subtasks=[Subtask.from_dict(s) for s in data.get("subtasks", [])],
        )


@dataclass
class FileEditResult:
    success: bool
    file_path: str
    new_content: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_ms: int = 0
    timed_out: bool = False


@dataclass
class DebugResult:
    """Outcome of running a command through the auto-debug loop."""
    success: bool
    final_output: CommandResult
    attempts: int = 1
    fixes: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TestFailureDetail:
    __test__ = False

    test: str
    message: str


@dataclass
class TestRunResult:
    __test__ = False

    framework: str
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration_ms: int = 0
    coverage: Optional[Dict[str, float]] = None
    failures: List[TestFailureDetail] = field(default_factory=list)


@dataclass
class QualityIssue:
    file: str
    line: int
    severity: str
    message: str
    rule: str = ""


@dataclass
class QualityReport:
    score: int
    issues: List[QualityIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


@dataclass
class ProjectContext:
    repo_root: str
    files: List[str] = field(default_factory=list)
    languages: Dict[str, int] = field(default_factory=dict)
    manifests: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        langs = ", ".join(f"{ext}={n}" for ext, n in sorted(self.languages.items(), key=lambda kv: -kv[1])[:5])
        manifests = ", ".join(sorted(self.manifests)) or "none"
        return f"{len(self.files)} files ({langs or 'no source'}); manifests: {manifests}"


class IPlanner(Protocol):
    """Source of execution plans and sink for per-subtask status."""

    async def get_execution_plan(self, task_id: str) -> Optional[ExecutionPlan]:
        ...

    async def update_subtask_status(
        self,
        subtask_id: str,
        status: SubtaskStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        ...


class IFileEditor(Protocol):
    async def apply_change(self, file_path: str, change_description: str) -> FileEditResult:
        ...


class ICommandExecutor(Protocol):
    async def run_with_auto_debug(
        self,
        task_id: str,
        command: str,
        work_dir: str,
        context: Optional[str] = None,
    ) -> DebugResult:
        ...


class ITestRunner(Protocol):
    async def run_tests(self, task_id: str, repo_root: str) -> TestRunResult:
        ...


class IQualityAnalyzer(Protocol):
    async def analyze_code(self, repo_root: str) -> QualityReport:
        ...

    async def format_code(self, repo_root: str) -> None:
        ...


class IContextGatherer(Protocol):
    async def gather_project_context(self, repo_root: str) -> ProjectContext:
        ...


class ICompletionProvider(Protocol):
    """The AI completion capability: chat messages in, text out."""

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        ...
