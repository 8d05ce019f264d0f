"""Concrete collaborators: stores, cache, event bus, shell, tests, quality, context, LLM."""

from devflow.adapters.completion import CompletionFileEditor, OpenAICompatibleCompletionProvider
from devflow.adapters.context import FileSystemContextGatherer
from devflow.adapters.memory import (
    InMemoryPlanStore,
    InMemoryStateCache,
    InMemoryStateStore,
    InMemoryTaskStatusStore,
)
from devflow.adapters.quality import CommandQualityAnalyzer
from devflow.adapters.redis_bus import RedisStreamEventBus
from devflow.adapters.redis_cache import RedisStateCache
from devflow.adapters.shell import ShellCommandExecutor
from devflow.adapters.sqlite_store import SqliteStateStore
from devflow.adapters.test_runner import CommandTestRunner

__all__ = [
    "CommandQualityAnalyzer",
    "CommandTestRunner",
    "CompletionFileEditor",
    "FileSystemContextGatherer",
    "InMemoryPlanStore",
    "InMemoryStateCache",
    "InMemoryStateStore",
    "InMemoryTaskStatusStore",
    "OpenAICompatibleCompletionProvider",
    "RedisStateCache",
    "RedisStreamEventBus",
    "ShellCommandExecutor",
    "SqliteStateStore",
]
