"""Tests for the devflow FastAPI application (devflow/api/app.py).

HTTP routes go through httpx AsyncClient + ASGITransport; the WebSocket
endpoint through Starlette's TestClient. Shell-backed collaborators are mocked.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from devflow.adapters.memory import InMemoryStateStore, InMemoryTaskStatusStore
from devflow.api.app import _is_terminal, create_app
from devflow.config import Settings
from devflow.di_container import DevflowContainer
from devflow.interfaces.collaborators import CommandResult, DebugResult, QualityReport, TestRunResult

TOKEN = "t0"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture(autouse=True)
def _reset_container():
    """Reset DI container between tests."""
    from devflow import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def test_runner():
    runner = AsyncMock()
    runner.run_tests.return_value = TestRunResult(framework="pytest", passed=1, total=1)
    return runner


@pytest.fixture
def container(test_runner):
    executor = AsyncMock()
    executor.run_with_auto_debug.return_value = DebugResult(success=True, final_output=CommandResult())
    context_gatherer = AsyncMock()
    context_gatherer.gather_project_context.side_effect = FileNotFoundError("no repo")
    quality_analyzer = AsyncMock()
    quality_analyzer.analyze_code.return_value = QualityReport(score=90)
    return DevflowContainer(
        Settings(_env_file=None, api_tokens=[TOKEN]),
        state_store=InMemoryStateStore(),
        task_status=InMemoryTaskStatusStore(),
        command_executor=executor,
        test_runner=test_runner,
        quality_analyzer=quality_analyzer,
        context_gatherer=context_gatherer,
    )


@pytest.fixture
async def client(container):
    app = create_app(container)
    # ASGITransport does not run the lifespan.
    await container.start()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await container.stop()


async def _wait_idle(container):
    service = container.workflow_service
    runs = [service._running[t] for t in service.running_tasks()]
    if runs:
        await asyncio.wait(runs, timeout=5)


async def _put_plan(client, task_id="task-1"):
    resp = await client.put(
        f"/workflow/plans/{task_id}",
        json={"subtasks": [{"id": f"{task_id}-s1", "description": "Build", "commands_to_run": ["make"]}]},
        headers=AUTH,
    )
    assert resp.status_code == 200
    return resp.json()


# --- Health ---

async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["environment"] == "development"
    assert data["running_tasks"] == []
    assert data["services"]["gateway"] is True


async def test_request_id_echoed(client):
    resp = await client.get("/health", headers={"X-Request-ID": "req-42"})
    assert resp.headers["X-Request-ID"] == "req-42"
    assert (await client.get("/health")).headers["X-Request-ID"]


# --- Auth ---

async def test_missing_token_rejected(client):
    resp = await client.get("/workflow/status/task-1")
    assert resp.status_code == 401


async def test_wrong_token_rejected(client):
    resp = await client.get("/workflow/status/task-1", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


# --- Workflow lifecycle ---

async def test_put_plan(client):
    data = await _put_plan(client)
    assert data == {"task_id": "task-1", "subtasks": ["task-1-s1"]}


async def test_execute_and_status(client, container):
    await _put_plan(client)
    resp = await client.post("/workflow/execute", json={"task_id": "task-1", "repo_root": "/repo"}, headers=AUTH)
    assert resp.status_code == 202
    assert resp.json() == {"task_id": "task-1", "status": "started", "message": "Workflow execution started"}

    await _wait_idle(container)
    resp = await client.get("/workflow/status/task-1", headers=AUTH)
    assert resp.status_code == 200
    status = resp.json()
    assert status["status"] == "SUCCESS"
    assert status["current_state"] == "COMPLETED"
    assert status["progress"] == 100
    assert status["completed_subtasks"] == 1
    assert status["running"] is False


async def test_execute_twice_conflicts(client, container):
    await _put_plan(client)
    await client.post("/workflow/execute", json={"task_id": "task-1", "repo_root": "/repo"}, headers=AUTH)
    await _wait_idle(container)

    resp = await client.post("/workflow/execute", json={"task_id": "task-1", "repo_root": "/repo"}, headers=AUTH)
    assert resp.status_code == 409
    assert resp.json()["error"]["category"] == "conflict"


async def test_execute_validates_body(client):
    resp = await client.post("/workflow/execute", json={"task_id": ""}, headers=AUTH)
    assert resp.status_code == 422


async def test_status_unknown_task(client):
    resp = await client.get("/workflow/status/ghost", headers=AUTH)
    assert resp.status_code == 404
    error = resp.json()["error"]
    assert error["category"] == "not_found"
    assert "ghost" in error["message"]


async def test_retry_failed_task(client, container, test_runner):
    await _put_plan(client)
    test_runner.run_tests.return_value = TestRunResult(framework="pytest", passed=3, failed=1, total=4)
    await client.post("/workflow/execute", json={"task_id": "task-1", "repo_root": "/repo"}, headers=AUTH)
    await _wait_idle(container)
    failed = (await client.get("/workflow/status/task-1", headers=AUTH)).json()
    assert failed["status"] == "FAILED"
    assert failed["retry_count"] == 1

    test_runner.run_tests.return_value = TestRunResult(framework="pytest", passed=4, total=4)
    resp = await client.post("/workflow/retry/task-1", headers=AUTH)
    assert resp.status_code == 202
    await _wait_idle(container)

    status = (await client.get("/workflow/status/task-1", headers=AUTH)).json()
    assert status["status"] == "SUCCESS"
    assert status["retry_count"] == 0
    assert status["last_error"] == failed["last_error"]


async def test_retry_requires_failed_task(client, container):
    await _put_plan(client)
    await client.post("/workflow/execute", json={"task_id": "task-1", "repo_root": "/repo"}, headers=AUTH)
    await _wait_idle(container)

    resp = await client.post("/workflow/retry/task-1", headers=AUTH)
    assert resp.status_code == 409
    assert (await client.post("/workflow/retry/ghost", headers=AUTH)).status_code == 404


async def test_cancel_without_run(client):
    resp = await client.post("/workflow/cancel/task-1", headers=AUTH)
    assert resp.status_code == 404


async def test_plans_not_supported_by_planner(container):
    container._planner = AsyncMock(spec=["get_execution_plan", "update_subtask_status"])
    transport = ASGITransport(app=create_app(container))
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        resp = await c.put("/workflow/plans/t", json={"subtasks": []}, headers=AUTH)
    assert resp.status_code == 501


async def test_progress_stream_requires_token(client):
    resp = await client.get("/workflow/progress/task-1", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401


def test_terminal_events():
    assert _is_terminal("task:error", {})
    assert _is_terminal("task:state-change", {"transition": {"to": "COMPLETED"}})
    assert _is_terminal("task:state-change", {"transition": {"to": "FAILED"}})
    assert not _is_terminal("task:state-change", {"transition": {"to": "TESTING"}})
    assert not _is_terminal("task:progress", {"message": "x"})


# --- WebSocket ---

def test_websocket_subscribe_ack(container):
    client = TestClient(create_app(container))
    with client.websocket_connect(f"/events?token={TOKEN}") as ws:
        ws.send_json({"event": "subscribe:task", "data": {"task_id": "t1"}})
        assert ws.receive_json() == {"event": "subscribed", "data": {"task_id": "t1"}}

        ws.send_json({"event": "dance", "data": {}})
        assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown event: dance"}}

        ws.send_json({"event": "unsubscribe:task", "data": {"task_id": "t1"}})
        assert ws.receive_json() == {"event": "unsubscribed", "data": {"task_id": "t1"}}


def test_websocket_header_auth(container):
    client = TestClient(create_app(container))
    with client.websocket_connect("/events", headers=AUTH) as ws:
        ws.send_json({"event": "subscribe:task", "data": {}})
        assert ws.receive_json()["event"] == "error"


def test_websocket_rejects_bad_token(container):
    client = TestClient(create_app(container))
    with client.websocket_connect("/events?token=wrong") as ws:
        assert ws.receive_json() == {"event": "error", "data": {"message": "Invalid token"}}
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 4401
