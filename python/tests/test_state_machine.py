"""Tests for the workflow state machine (devflow/workflow/state_machine.py)."""

import asyncio
import itertools

import pytest
from unittest.mock import AsyncMock

from devflow.adapters.memory import InMemoryStateCache, InMemoryStateStore, InMemoryTaskStatusStore
from devflow.event_bus import InMemoryEventBus
from devflow.exceptions import (
    EventBusUnavailableError,
    InvalidTransitionError,
    StoreUnavailableError,
    WorkflowAlreadyExistsError,
    WorkflowNotFoundError,
)
from devflow.interfaces.event_bus import WORKFLOW_EVENTS_TOPIC
from devflow.workflow.models import (
    STATE_PROGRESS,
    VALID_TRANSITIONS,
    WorkflowState,
    WorkflowStateName,
    can_transition,
)
from devflow.workflow.state_machine import FailureInfo, RetryInfo, StateMachine

S = WorkflowStateName


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def cache():
    return InMemoryStateCache()


@pytest.fixture
async def bus():
    bus = InMemoryEventBus()
    yield bus
    await bus.close()


@pytest.fixture
def task_status():
    return InMemoryTaskStatusStore()


@pytest.fixture
def machine(store, cache, bus, task_status):
    return StateMachine(store=store, cache=cache, event_bus=bus, task_status=task_status)


async def _collect(bus):
    received = []

    async def handler(message):
        received.append(message)

    await bus.subscribe(WORKFLOW_EVENTS_TOPIC, "test", handler)
    return received


async def _drive(machine, task_id, *states):
    for state in states:
        await machine.transition(task_id, state, f"TO_{state.value}")


# --- Transition table ---

def test_transition_table_shape():
    assert VALID_TRANSITIONS[S.COMPLETED] == frozenset()
    assert VALID_TRANSITIONS[S.FAILED] == frozenset({S.RETRYING})
    assert can_transition(S.IDLE, S.PLANNING)
    assert not can_transition(S.IDLE, S.EXECUTING)
    assert not can_transition(S.TESTING, S.COMPLETED)
    assert S.FAILED not in STATE_PROGRESS


async def test_initialize_creates_idle_state(machine, store):
    state = await machine.initialize_workflow("task-1")
    assert state.current_state is S.IDLE
    assert state.progress == 0
    assert state.history == []
    assert state.retry_count == 0
    assert "task-1" in store


async def test_initialize_twice_raises_already_exists(machine):
    await machine.initialize_workflow("task-1")
    with pytest.raises(WorkflowAlreadyExistsError):
        await machine.initialize_workflow("task-1")


async def test_initialize_overwrite_restarts_and_keeps_last_error(machine):
    await machine.initialize_workflow("task-1")
    await machine.transition("task-1", S.PLANNING, "START")
    await machine.mark_failed("task-1", "boom")
    await machine.increment_retry("task-1")

    state = await machine.initialize_workflow("task-1", overwrite=True)
    assert state.current_state is S.IDLE
    assert state.history == []
    assert state.retry_count == 0
    assert state.last_error == "boom"


async def test_get_state_unknown_task(machine):
    with pytest.raises(WorkflowNotFoundError):
        await machine.get_state("missing")


async def test_scenario_planning_then_executing(machine):
    await machine.initialize_workflow("task-1")
    await machine.transition("task-1", S.PLANNING, "START")
    await machine.transition("task-1", S.EXECUTING, "START")

    state = await machine.get_state("task-1")
    assert state.progress == 40
    assert len(state.history) == 2


@pytest.mark.parametrize(
    "from_state,to_state",
    [
        (f, t)
        for f, t in itertools.product(list(S), list(S))
        if t not in VALID_TRANSITIONS[f]
    ],
)
async def test_invalid_transitions_leave_state_unchanged(machine, store, from_state, to_state):
    await machine.initialize_workflow("t")
    # Write the starting state directly so every source state is reachable.
    await store.upsert("t", WorkflowState(task_id="t", current_state=from_state, progress=33).to_dict())
    machine._cache = None
    before = (await machine.get_state("t")).to_dict()

    with pytest.raises(InvalidTransitionError) as excinfo:
        await machine.transition("t", to_state, "BAD")

    assert excinfo.value.http_status == 409
    assert (await machine.get_state("t")).to_dict() == before


async def test_progress_monotonic_along_happy_path(machine):
    await machine.initialize_workflow("u")
    progress = [0]
    for target in [S.PLANNING, S.EXECUTING, S.TESTING, S.DELIVERING, S.COMPLETED]:
        progress.append((await machine.transition("u", target, "NEXT")).progress)
    assert progress == sorted(progress)
    assert progress == [0, 10, 40, 60, 85, 100]


@pytest.mark.parametrize(
    "path",
    [
        [S.PLANNING],
        [S.PLANNING, S.EXECUTING],
        [S.PLANNING, S.EXECUTING, S.DEBUGGING],
        [S.PLANNING, S.EXECUTING, S.TESTING],
        [S.PLANNING, S.EXECUTING, S.TESTING, S.DEBUGGING, S.RETRYING],
        [S.PLANNING, S.EXECUTING, S.DELIVERING],
    ],
)
async def test_failed_preserves_prior_progress(machine, path):
    await machine.initialize_workflow("t")
    await _drive(machine, "t", *path)
    prior = (await machine.get_state("t")).progress

    state = await machine.mark_failed("t", "it broke")
    assert state.current_state is S.FAILED
    assert state.progress == prior
    assert state.last_error == "it broke"


async def test_history_is_append_only_chain(machine):
    await machine.initialize_workflow("t")
    path = [S.PLANNING, S.EXECUTING, S.DEBUGGING, S.RETRYING, S.EXECUTING, S.TESTING]
    await _drive(machine, "t", *path)

    history = (await machine.get_state("t")).history
    assert len(history) == len(path)
    previous = S.IDLE
    for record, target in zip(history, path):
        assert record.from_state is previous
        assert record.to_state is target
        assert record.timestamp
        previous = record.to_state


async def test_cache_and_store_agree_after_transition(machine, cache):
    await machine.initialize_workflow("t")
    await machine.transition("t", S.PLANNING, "START", {"context_summary": "3 files"})
    through_cache = (await machine.get_state("t")).to_dict()

    cache.clear()
    through_store = (await machine.get_state("t")).to_dict()
    assert through_store == through_cache
    assert through_store["metadata"] == {"context_summary": "3 files"}


async def test_unreadable_cache_entry_is_a_miss(machine, cache):
    await machine.initialize_workflow("t")
    await cache.set("t", {"garbage": True})
    state = await machine.get_state("t")
    assert state.current_state is S.IDLE


async def test_cache_outage_falls_through_to_store(store, bus):
    broken = AsyncMock()
    broken.get.side_effect = ConnectionError("cache down")
    broken.set.side_effect = ConnectionError("cache down")
    machine = StateMachine(store=store, cache=broken, event_bus=bus)

    await machine.initialize_workflow("t")
    state = await machine.transition("t", S.PLANNING, "START")
    assert state.current_state is S.PLANNING
    assert (await machine.get_state("t")).current_state is S.PLANNING


async def test_store_failure_aborts_transition_without_publish(store, cache, bus):
    machine = StateMachine(store=store, cache=cache, event_bus=bus)
    await machine.initialize_workflow("t")
    received = await _collect(bus)

    failing = AsyncMock()
    failing.get = store.get
    failing.upsert.side_effect = OSError("disk full")
    machine._store = failing

    with pytest.raises(StoreUnavailableError):
        await machine.transition("t", S.PLANNING, "START")
    await bus.join()
    assert received == []

    machine._store = store
    cache.clear()
    assert (await machine.get_state("t")).current_state is S.IDLE


async def test_transition_publishes_event(machine, bus):
    received = await _collect(bus)
    await machine.initialize_workflow("t")
    await machine.transition("t", S.PLANNING, "START_PLANNING")
    await bus.join()

    assert len(received) == 1
    message = received[0]
    assert message["type"] == "STATE_TRANSITION"
    assert message["task_id"] == "t"
    assert message["transition"]["from"] == "IDLE"
    assert message["transition"]["to"] == "PLANNING"
    assert message["transition"]["event"] == "START_PLANNING"
    assert message["progress"] == 10


async def test_slow_subscriber_does_not_block_transitions(machine, bus):
    release = asyncio.Event()
    received = []

    async def slow_handler(message):
        await release.wait()
        received.append(message["transition"]["to"])

    await bus.subscribe(WORKFLOW_EVENTS_TOPIC, "slow", slow_handler)
    await machine.initialize_workflow("t")

    await asyncio.wait_for(_drive(machine, "t", S.PLANNING, S.EXECUTING), timeout=0.5)
    assert (await machine.get_state("t")).current_state is S.EXECUTING
    assert received == []

    release.set()
    await bus.join()
    assert received == ["PLANNING", "EXECUTING"]


async def test_unknown_target_state_is_invalid_transition(machine):
    await machine.initialize_workflow("t")
    with pytest.raises(InvalidTransitionError) as excinfo:
        await machine.transition("t", "SHIPPING", "SHIP")
    assert excinfo.value.http_status == 409
    assert (await machine.get_state("t")).current_state is S.IDLE


async def test_publish_failure_after_durable_write(store, cache):
    bus = AsyncMock()
    bus.publish.side_effect = ConnectionError("bus down")
    machine = StateMachine(store=store, cache=cache, event_bus=bus)
    await machine.initialize_workflow("t")

    with pytest.raises(EventBusUnavailableError):
        await machine.transition("t", S.PLANNING, "START")

    cache.clear()
    assert (await machine.get_state("t")).current_state is S.PLANNING


async def test_mark_failed_signals_task_status(machine, task_status):
    await task_status.register_task("t", "/repo")
    await machine.initialize_workflow("t")
    await machine.transition("t", S.PLANNING, "START")

    state = await machine.mark_failed("t", "no plan", kind="error")
    assert state.history[-1].event == "ERROR"
    assert state.history[-1].metadata == {"error": "no plan", "kind": "error"}
    assert (await task_status.get_task("t"))["status"] == "FAILED"


async def test_mark_completed_signals_success(machine, task_status):
    await task_status.register_task("t", "/repo")
    await machine.initialize_workflow("t")
    await _drive(machine, "t", S.PLANNING, S.EXECUTING, S.DELIVERING)

    state = await machine.mark_completed("t", "done")
    assert state.current_state is S.COMPLETED
    assert state.progress == 100
    assert state.history[-1].metadata == {"result": "done"}
    task = await task_status.get_task("t")
    assert task["status"] == "SUCCESS"
    assert task["completed_at"] is not None


async def test_completed_is_terminal(machine):
    await machine.initialize_workflow("t")
    await _drive(machine, "t", S.PLANNING, S.EXECUTING, S.DELIVERING, S.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        await machine.mark_failed("t", "late error")


async def test_retry_bookkeeping_emits_no_event(machine, bus):
    await machine.initialize_workflow("t")
    received = await _collect(bus)

    assert await machine.increment_retry("t") == 1
    assert await machine.increment_retry("t") == 2
    state = await machine.reset_retries("t")
    assert state.retry_count == 0
    await bus.join()
    assert received == []


async def test_record_error_keeps_state(machine):
    await machine.initialize_workflow("t")
    await machine.transition("t", S.PLANNING, "START")
    await machine.mark_failed("t", "first")

    state = await machine.record_error("t", "second")
    assert state.current_state is S.FAILED
    assert state.last_error == "second"
    assert len(state.history) == 2


async def test_set_current_subtask(machine):
    await machine.initialize_workflow("t")
    assert (await machine.set_current_subtask("t", "s1")).current_subtask_id == "s1"
    assert (await machine.set_current_subtask("t", None)).current_subtask_id is None


async def test_typed_metadata_drops_empty_fields(machine):
    await machine.initialize_workflow("t")
    await _drive(machine, "t", S.PLANNING, S.EXECUTING, S.DEBUGGING)
    state = await machine.transition("t", S.RETRYING, "RETRY", RetryInfo(error="x", retry_count=1))
    assert state.history[-1].metadata == {"error": "x", "retry_count": 1}
    assert FailureInfo(error="e").to_metadata() == {"error": "e", "kind": "error"}


async def test_concurrent_transitions_are_serialized(machine):
    import asyncio

    await machine.initialize_workflow("t")
    results = await asyncio.gather(
        machine.transition("t", S.PLANNING, "A"),
        machine.transition("t", S.PLANNING, "B"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidTransitionError)
    assert len((await machine.get_state("t")).history) == 1
