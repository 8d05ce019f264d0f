"""Dependency injection container for devflow.

Lightweight wiring of core services at application startup.
Uses lazy initialization: services are created on first access, and any
service can be replaced by passing it as a keyword argument.
"""

import logging
from typing import Any, Dict, Optional

from devflow.config import Settings, get_settings

logger = logging.getLogger(__name__)

SERVICES = (
    "redis",
    "state_store",
    "task_status",
    "cache",
    "event_bus",
    "registry",
    "authenticator",
    "gateway",
    "state_machine",
    "planner",
    "command_executor",
    "test_runner",
    "quality_analyzer",
    "context_gatherer",
    "completion_provider",
    "file_editor",
    "orchestrator",
    "workflow_service",
)


class DevflowContainer:
    """Central service container."""

    def __init__(self, settings: Optional[Settings] = None, **overrides: Any) -> None:
        unknown = set(overrides) - set(SERVICES)
        if unknown:
            raise TypeError(f"Unknown services: {', '.join(sorted(unknown))}")
        self.settings = settings or get_settings()
        for name in SERVICES:
            setattr(self, f"_{name}", overrides.get(name))
        self._started = False

    @property
    def redis(self):
        if self._redis is None and self.settings.redis_url:
            from redis.asyncio import Redis
            self._redis = Redis.from_url(self.settings.redis_url)
        return self._redis

    @property
    def state_store(self):
        if self._state_store is None:
            from devflow.adapters.sqlite_store import SqliteStateStore
            self._state_store = SqliteStateStore(self.settings.db_path)
        return self._state_store

    @property
    def task_status(self):
        if self._task_status is None:
            from devflow.adapters.sqlite_store import SqliteStateStore
            if isinstance(self.state_store, SqliteStateStore):
                self._task_status = self.state_store
            else:
                from devflow.adapters.memory import InMemoryTaskStatusStore
                self._task_status = InMemoryTaskStatusStore()
        return self._task_status

    @property
    def cache(self):
        if self._cache is None:
            if self.redis is not None:
                from devflow.adapters.redis_cache import RedisStateCache
                self._cache = RedisStateCache(
                    self.redis, self.settings.cache_key_prefix, self.settings.cache_ttl_seconds
                )
            else:
                from devflow.adapters.memory import InMemoryStateCache
                self._cache = InMemoryStateCache(self.settings.cache_ttl_seconds)
        return self._cache

    @property
    def event_bus(self):
        if self._event_bus is None:
            if self.redis is not None:
                from devflow.adapters.redis_bus import RedisStreamEventBus
                self._event_bus = RedisStreamEventBus(self.redis, self.settings.stream_prefix)
            else:
                from devflow.event_bus import InMemoryEventBus
                self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def registry(self):
        if self._registry is None:
            from devflow.gateway.registry import SubscriptionRegistry
            self._registry = SubscriptionRegistry()
        return self._registry

    @property
    def authenticator(self):
        if self._authenticator is None:
            from devflow.gateway.auth import TokenAuthenticator
            self._authenticator = TokenAuthenticator(self.settings.api_tokens)
        return self._authenticator

    @property
    def gateway(self):
        if self._gateway is None:
            from devflow.gateway.fanout import EventFanOutGateway
            # Progress reaches the gateway directly from the orchestrator.
            self._gateway = EventFanOutGateway(
                self.registry, self.authenticator, self.event_bus, relay_progress=False
            )
        return self._gateway

    @property
    def state_machine(self):
        if self._state_machine is None:
            from devflow.workflow.state_machine import StateMachine
            self._state_machine = StateMachine(
                store=self.state_store,
                cache=self.cache,
                event_bus=self.event_bus,
                task_status=self.task_status,
                cache_ttl=self.settings.cache_ttl_seconds,
            )
        return self._state_machine

    @property
    def planner(self):
        if self._planner is None:
            from devflow.adapters.memory import InMemoryPlanStore
            self._planner = InMemoryPlanStore()
        return self._planner

    @property
    def command_executor(self):
        if self._command_executor is None:
            from devflow.adapters.shell import ShellCommandExecutor
            self._command_executor = ShellCommandExecutor(
                timeout_seconds=self.settings.command_timeout_seconds,
                max_attempts=self.settings.command_debug_attempts,
            )
        return self._command_executor

    @property
    def test_runner(self):
        if self._test_runner is None:
            from devflow.adapters.test_runner import CommandTestRunner
            self._test_runner = CommandTestRunner(self.command_executor, self.settings.test_command)
        return self._test_runner

    @property
    def quality_analyzer(self):
        if self._quality_analyzer is None:
            from devflow.adapters.quality import CommandQualityAnalyzer
            self._quality_analyzer = CommandQualityAnalyzer(
                self.command_executor, self.settings.lint_command, self.settings.format_command
            )
        return self._quality_analyzer

    @property
    def context_gatherer(self):
        if self._context_gatherer is None:
            from devflow.adapters.context import FileSystemContextGatherer
            self._context_gatherer = FileSystemContextGatherer()
        return self._context_gatherer

    @property
    def completion_provider(self):
        if self._completion_provider is None and self.settings.llm_base_url:
            from devflow.adapters.completion import OpenAICompatibleCompletionProvider
            self._completion_provider = OpenAICompatibleCompletionProvider(
                base_url=self.settings.llm_base_url,
                api_key=self.settings.llm_api_key,
                model=self.settings.llm_model,
                timeout_seconds=self.settings.llm_timeout_seconds,
            )
        return self._completion_provider

    @property
    def file_editor(self):
        if self._file_editor is None:
            from devflow.adapters.completion import CompletionFileEditor
            if self.completion_provider is None:
                logger.warning("No completion provider configured; file edits will fail")
            self._file_editor = CompletionFileEditor(self.completion_provider)
        return self._file_editor

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from devflow.workflow.orchestrator import TaskOrchestrator
            self._orchestrator = TaskOrchestrator(
                state_machine=self.state_machine,
                planner=self.planner,
                file_editor=self.file_editor,
                command_executor=self.command_executor,
                test_runner=self.test_runner,
                quality_analyzer=self.quality_analyzer,
                context_gatherer=self.context_gatherer,
                event_bus=self.event_bus,
                gateway=self.gateway,
                task_status=self.task_status,
                max_retries=self.settings.max_retries,
                quality_format_threshold=self.settings.quality_format_threshold,
            )
        return self._orchestrator

    @property
    def workflow_service(self):
        if self._workflow_service is None:
            from devflow.workflow.service import WorkflowService
            self._workflow_service = WorkflowService(
                orchestrator=self.orchestrator,
                state_machine=self.state_machine,
                task_status=self.task_status,
                max_concurrent_tasks=self.settings.max_concurrent_tasks,
            )
        return self._workflow_service

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        initialize = getattr(self.state_store, "initialize", None)
        if initialize is not None:
            await initialize()
        await self.gateway.start()
        self._started = True
        logger.info("devflow container started (%s)", self.settings.environment)

    async def stop(self) -> None:
        if self._workflow_service is not None:
            await self._workflow_service.shutdown()
        if self._gateway is not None:
            await self._gateway.stop()
        if self._event_bus is not None:
            await self._event_bus.close()
        if self._completion_provider is not None:
            await self._completion_provider.close()
        close = getattr(self._state_store, "close", None)
        if close is not None:
            await close()
        if self._redis is not None:
            await self._redis.aclose()
        self._started = False
        logger.info("devflow container stopped")

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {name: getattr(self, f"_{name}") is not None for name in SERVICES}


# Global container
_container: Optional[DevflowContainer] = None


def get_container(settings: Optional[Settings] = None) -> DevflowContainer:
    global _container
    if _container is None:
        _container = DevflowContainer(settings)
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.stop()
    _container = None
