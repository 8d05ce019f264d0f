"""
devflow FastAPI application entry point.

- /health: service health status
- /workflow/execute: start a workflow (fire and continue)
- /workflow/status/{task_id}: aggregated task progress
- /workflow/retry/{task_id}: explicit retry of a failed task
- /workflow/cancel/{task_id}: cancel a running workflow
- /workflow/plans/{task_id}: register an execution plan
- /workflow/progress/{task_id}: Server-Sent Events progress stream
- /events: WebSocket fan-out of task events
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse
from starlette.requests import HTTPConnection

import devflow
from devflow.api.middleware import RequestIDMiddleware
from devflow.di_container import DevflowContainer, get_container
from devflow.enhanced_logging import configure_logging
from devflow.exceptions import AuthenticationError, DevflowException
from devflow.gateway.fanout import TASK_ERROR, TASK_STATE_CHANGE
from devflow.gateway.listeners import QueueListener
from devflow.gateway.websocket import serve_websocket

logger = logging.getLogger(__name__)

SSE_PING_SECONDS = 30.0
TERMINAL_STATES = ("COMPLETED", "FAILED")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ExecuteRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=200)
    repo_root: str = Field(min_length=1)


class SubtaskModel(BaseModel):
    id: str
    description: str
    files_to_edit: List[str] = Field(default_factory=list)
    commands_to_run: List[str] = Field(default_factory=list)
    success_conditions: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    code_changes: Optional[str] = None


class PlanRequest(BaseModel):
    subtasks: List[SubtaskModel] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(container: Optional[DevflowContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI):
        active = application.state.container or get_container()
        application.state.container = active
        configure_logging(active.settings.get_log_level(), active.settings.log_format)
        logger.info("devflow %s starting up", devflow.__version__)
        await active.start()
        yield
        await active.stop()
        logger.info("devflow shutting down")

    application = FastAPI(
        title="devflow",
        version=devflow.__version__,
        description="Autonomous coding workflow orchestration",
        lifespan=lifespan,
    )
    application.state.container = container
    application.add_middleware(RequestIDMiddleware)

    @application.exception_handler(DevflowException)
    async def devflow_exception_handler(request: Request, exc: DevflowException):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    _register_routes(application)
    return application


def _container(conn: HTTPConnection) -> DevflowContainer:
    container = conn.app.state.container
    if container is None:
        container = get_container()
        conn.app.state.container = container
    return container


async def require_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    try:
        return await _container(request).authenticator.authenticate(authorization)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message)


def _register_routes(application: FastAPI) -> None:
    @application.get("/health")
    async def health(request: Request):
        container = _container(request)
        return {
            "status": "healthy",
            "version": devflow.__version__,
            "environment": container.settings.environment,
            "running_tasks": container.workflow_service.running_tasks(),
            "listeners": len(container.registry),
            "services": container.status(),
        }

    @application.post("/workflow/execute", status_code=202)
    async def execute_workflow(req: ExecuteRequest, request: Request, _identity: str = Depends(require_token)):
        return await _container(request).workflow_service.start_workflow(req.task_id, req.repo_root)

    @application.get("/workflow/status/{task_id}")
    async def workflow_status(task_id: str, request: Request, _identity: str = Depends(require_token)):
        return await _container(request).workflow_service.get_workflow_status(task_id)

    @application.post("/workflow/retry/{task_id}", status_code=202)
    async def retry_workflow(task_id: str, request: Request, _identity: str = Depends(require_token)):
        return await _container(request).workflow_service.retry_workflow(task_id)

    @application.post("/workflow/cancel/{task_id}")
    async def cancel_workflow(task_id: str, request: Request, _identity: str = Depends(require_token)):
        return await _container(request).workflow_service.cancel_workflow(task_id)

    @application.put("/workflow/plans/{task_id}")
    async def put_plan(
        task_id: str, req: PlanRequest, request: Request, _identity: str = Depends(require_token)
    ):
        planner = _container(request).planner
        if not hasattr(planner, "put_plan"):
            raise HTTPException(status_code=501, detail="Configured planner does not accept plans")
        plan = await planner.put_plan(task_id, req.model_dump())
        return {"task_id": task_id, "subtasks": [s.id for s in plan.subtasks]}

    @application.get("/workflow/progress/{task_id}")
    async def stream_progress(task_id: str, request: Request, authorization: Optional[str] = Header(default=None)):
        """Stream task events as Server-Sent Events until the workflow settles."""
        gateway = _container(request).gateway
        listener = QueueListener()
        if not await gateway.on_connect(listener, authorization):
            raise HTTPException(status_code=401, detail="Authentication failed")
        await gateway.subscribe(listener, task_id)

        async def event_generator():
            try:
                while True:
                    try:
                        item = await listener.get(timeout=SSE_PING_SECONDS)
                    except asyncio.TimeoutError:
                        yield {"event": "ping", "data": ""}
                        continue
                    if item is None:
                        break
                    event, payload = item
                    yield {"event": event, "data": json.dumps(payload, default=str)}
                    if _is_terminal(event, payload):
                        break
            finally:
                await gateway.on_disconnect(listener)
                await listener.close()

        return EventSourceResponse(event_generator())

    @application.websocket("/events")
    async def events(websocket: WebSocket):
        gateway = _container(websocket).gateway
        credentials = websocket.query_params.get("token") or websocket.headers.get("authorization")
        await serve_websocket(websocket, gateway, credentials)


def _is_terminal(event: str, payload: Dict[str, Any]) -> bool:
    if event == TASK_ERROR:
        return True
    if event == TASK_STATE_CHANGE:
        return (payload.get("transition") or {}).get("to") in TERMINAL_STATES
    return False


app = create_app()
