"""Tests for the fire-and-continue workflow service (devflow/workflow/service.py)."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from devflow.adapters.memory import (
    InMemoryPlanStore,
    InMemoryStateCache,
    InMemoryStateStore,
    InMemoryTaskStatusStore,
)
from devflow.exceptions import (
    AlreadyExistsError,
    InvalidRetryRequestError,
    NotFoundError,
    TaskNotFoundError,
    WorkflowAlreadyExistsError,
)
from devflow.interfaces.collaborators import CommandResult, DebugResult, TestRunResult
from devflow.workflow.models import WorkflowStateName
from devflow.workflow.orchestrator import TaskOrchestrator
from devflow.workflow.service import WorkflowService
from devflow.workflow.state_machine import StateMachine

S = WorkflowStateName


@pytest.fixture
def task_status():
    return InMemoryTaskStatusStore()


@pytest.fixture
def machine(task_status):
    return StateMachine(store=InMemoryStateStore(), cache=InMemoryStateCache(), task_status=task_status)


@pytest.fixture
def planner():
    return InMemoryPlanStore()


@pytest.fixture
def executor():
    executor = AsyncMock()
    executor.run_with_auto_debug.return_value = DebugResult(success=True, final_output=CommandResult())
    return executor


@pytest.fixture
def test_runner():
    runner = AsyncMock()
    runner.run_tests.return_value = TestRunResult(framework="pytest", passed=2, total=2)
    return runner


@pytest.fixture
def orchestrator(machine, planner, executor, test_runner, task_status):
    return TaskOrchestrator(
        state_machine=machine,
        planner=planner,
        file_editor=AsyncMock(),
        command_executor=executor,
        test_runner=test_runner,
        task_status=task_status,
    )


@pytest.fixture
async def service(orchestrator, machine, task_status):
    svc = WorkflowService(orchestrator, machine, task_status, max_concurrent_tasks=2)
    yield svc
    await svc.shutdown()


async def _settle(service):
    runs = [service._running[t] for t in service.running_tasks()]
    if runs:
        await asyncio.wait(runs, timeout=5)


def _block(executor):
    started = asyncio.Event()
    release = asyncio.Event()

    async def run(task_id, command, work_dir, context=None):
        started.set()
        await release.wait()
        return DebugResult(success=True, final_output=CommandResult())

    executor.run_with_auto_debug.side_effect = run
    return started, release


async def test_start_returns_immediately(service, planner, task_status, executor, machine):
    await planner.put_plan("t1", {"subtasks": [{"id": "s1", "description": "d", "commands_to_run": ["make"]}]})
    started, release = _block(executor)

    result = await service.start_workflow("t1", "/repo")
    assert result == {"task_id": "t1", "status": "started", "message": "Workflow execution started"}
    assert (await task_status.get_task("t1"))["status"] == "RUNNING"

    await asyncio.wait_for(started.wait(), timeout=5)
    assert service.is_running("t1")
    assert service.running_tasks() == ["t1"]

    release.set()
    await _settle(service)
    assert not service.is_running("t1")
    assert (await machine.get_state("t1")).current_state is S.COMPLETED
    assert (await task_status.get_task("t1"))["status"] == "SUCCESS"


async def test_start_while_running_conflicts(service, planner, executor):
    await planner.put_plan("t1", {"subtasks": [{"id": "s1", "description": "d", "commands_to_run": ["make"]}]})
    started, release = _block(executor)
    await service.start_workflow("t1", "/repo")
    await asyncio.wait_for(started.wait(), timeout=5)

    with pytest.raises(AlreadyExistsError):
        await service.start_workflow("t1", "/repo")
    release.set()


async def test_start_existing_workflow_conflicts(service, planner):
    await planner.put_plan("t1", {"subtasks": []})
    await service.start_workflow("t1", "/repo")
    await _settle(service)
    with pytest.raises(WorkflowAlreadyExistsError):
        await service.start_workflow("t1", "/repo")


async def test_unexpected_error_routes_to_failure_handling(service, orchestrator, machine, task_status):
    await machine.initialize_workflow("t1")
    orchestrator.execute_task = AsyncMock(side_effect=RuntimeError("scheduler blew up"))

    await service.start_workflow("t1", "/repo", restart=True)
    await _settle(service)

    state = await machine.get_state("t1")
    assert state.current_state is S.FAILED
    assert state.last_error == "scheduler blew up"
    assert (await task_status.get_task("t1"))["status"] == "FAILED"


async def test_status_includes_running_flag(service, planner):
    await planner.put_plan("t1", {"subtasks": []})
    await service.start_workflow("t1", "/repo")
    await _settle(service)
    status = await service.get_workflow_status("t1")
    assert status["running"] is False
    assert status["current_state"] == "COMPLETED"


async def test_retry_flow(service, planner, test_runner, machine):
    await planner.put_plan("t1", {"subtasks": []})
    test_runner.run_tests.return_value = TestRunResult(framework="pytest", passed=1, failed=1, total=2)
    await service.start_workflow("t1", "/repo")
    await _settle(service)
    assert (await machine.get_state("t1")).retry_count == 1

    test_runner.run_tests.return_value = TestRunResult(framework="pytest", passed=2, total=2)
    await service.retry_workflow("t1")
    await _settle(service)

    state = await machine.get_state("t1")
    assert state.current_state is S.COMPLETED
    assert state.retry_count == 0


async def test_retry_rejections(service, planner):
    with pytest.raises(TaskNotFoundError):
        await service.retry_workflow("ghost")

    await planner.put_plan("t1", {"subtasks": []})
    await service.start_workflow("t1", "/repo")
    await _settle(service)
    with pytest.raises(InvalidRetryRequestError):
        await service.retry_workflow("t1")


async def test_cancel_running_workflow(service, planner, executor, machine, task_status):
    await planner.put_plan("t1", {"subtasks": [{"id": "s1", "description": "d", "commands_to_run": ["sleep"]}]})
    started, _release = _block(executor)
    await service.start_workflow("t1", "/repo")
    await asyncio.wait_for(started.wait(), timeout=5)

    result = await service.cancel_workflow("t1")
    assert result == {"task_id": "t1", "status": "cancelled"}
    assert not service.is_running("t1")

    state = await machine.get_state("t1")
    assert state.current_state is S.FAILED
    assert state.last_error.startswith("cancelled:")
    assert (await task_status.get_task("t1"))["status"] == "FAILED"


async def test_cancel_unknown(service):
    with pytest.raises(NotFoundError):
        await service.cancel_workflow("ghost")


async def test_concurrency_is_bounded(service, planner, executor):
    for task_id in ("a", "b", "c"):
        await planner.put_plan(task_id, {"subtasks": [{"id": f"{task_id}-1", "description": "d", "commands_to_run": ["x"]}]})

    in_flight = 0
    peak = 0
    release = asyncio.Event()

    async def run(task_id, command, work_dir, context=None):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await release.wait()
        in_flight -= 1
        return DebugResult(success=True, final_output=CommandResult())

    executor.run_with_auto_debug.side_effect = run
    for task_id in ("a", "b", "c"):
        await service.start_workflow(task_id, "/repo")
    for _ in range(20):
        await asyncio.sleep(0)

    assert peak == 2
    release.set()
    await _settle(service)
    assert peak == 2


async def test_shutdown_cancels_runs(service, planner, executor):
    await planner.put_plan("t1", {"subtasks": [{"id": "s1", "description": "d", "commands_to_run": ["sleep"]}]})
    started, _release = _block(executor)
    await service.start_workflow("t1", "/repo")
    await asyncio.wait_for(started.wait(), timeout=5)

    await service.shutdown()
    assert service.running_tasks() == []
