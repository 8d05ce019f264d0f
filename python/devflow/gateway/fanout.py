"""
Event fan-out gateway.

Bridges the event bus to live listeners: keeps the per-task subscription
registry, authenticates connections and pushes each event to exactly the
listeners subscribed to its task. Delivery is at-most-once and best effort:
events for a task without subscribers are dropped, and a listener whose push
fails is treated as disconnected without affecting the others.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from devflow.exceptions import AuthenticationError
from devflow.interfaces.event_bus import IEventBus, TASK_PROGRESS_TOPIC, WORKFLOW_EVENTS_TOPIC
from devflow.interfaces.transport import IAuthenticator, IListener
from devflow.gateway.registry import ListenerState, SubscriptionRegistry
from devflow.workflow.models import utc_now_iso

logger = logging.getLogger(__name__)

GATEWAY_GROUP_ID = "workflow-gateway"
AUTH_FAILED_CLOSE_CODE = 4401
GOING_AWAY_CLOSE_CODE = 1001

# Outbound event names
TASK_PROGRESS = "task:progress"
TASK_STATE_CHANGE = "task:state-change"
TASK_STATUS = "task:status"
TASK_FILE_CHANGE = "task:file-change"
TASK_COMMAND = "task:command"
TASK_REVIEW = "task:review"
TASK_ERROR = "task:error"


class EventFanOutGateway:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        authenticator: Optional[IAuthenticator] = None,
        event_bus: Optional[IEventBus] = None,
        relay_progress: bool = True,
    ):
        self.registry = registry
        self._authenticator = authenticator
        self._event_bus = event_bus
        self._relay_progress = relay_progress
        self._bus_subscriptions: List[str] = []

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._event_bus is None or self._bus_subscriptions:
            return
        self._bus_subscriptions.append(
            await self._event_bus.subscribe(WORKFLOW_EVENTS_TOPIC, GATEWAY_GROUP_ID, self._on_workflow_event)
        )
        if self._relay_progress:
            self._bus_subscriptions.append(
                await self._event_bus.subscribe(TASK_PROGRESS_TOPIC, GATEWAY_GROUP_ID, self._on_progress_event)
            )
        logger.info("Fan-out gateway subscribed to %d bus topic(s)", len(self._bus_subscriptions))

    async def stop(self) -> None:
        if self._event_bus is not None:
            for subscription_id in self._bus_subscriptions:
                await self._event_bus.unsubscribe(subscription_id)
        self._bus_subscriptions.clear()

        for listener in await self.registry.clear():
            try:
                await listener.close(GOING_AWAY_CLOSE_CODE, "server shutdown")
            except Exception:
                logger.debug("Error closing listener %s", listener.listener_id, exc_info=True)
        logger.info("Fan-out gateway stopped")

    # ── Connection lifecycle ─────────────────────────────────────────

    async def on_connect(self, listener: IListener, credentials: Any = None) -> bool:
        """Authenticate and register a listener. Returns False when rejected."""
        try:
            identity = await self._authenticate(credentials)
        except AuthenticationError as exc:
            logger.warning("Listener %s failed authentication: %s", listener.listener_id, exc.message)
            try:
                await listener.push("error", {"message": exc.message})
            except Exception:
                logger.debug("Could not notify listener %s", listener.listener_id, exc_info=True)
            await listener.close(AUTH_FAILED_CLOSE_CODE, exc.message)
            return False

        await self.registry.add_listener(listener, identity)
        logger.info("Listener %s connected as %s", listener.listener_id, identity)
        return True

    async def on_disconnect(self, listener: IListener) -> None:
        tasks = await self.registry.remove_listener(listener.listener_id)
        logger.info("Listener %s disconnected (%d subscription(s) removed)", listener.listener_id, len(tasks))

    async def subscribe(self, listener: IListener, task_id: str) -> None:
        self._require_connected(listener)
        added = await self.registry.subscribe(listener.listener_id, task_id)
        if added:
            logger.info("Listener %s subscribed to task %s", listener.listener_id, task_id)
        await self._push_or_drop(listener, "subscribed", {"task_id": task_id})

    async def unsubscribe(self, listener: IListener, task_id: str) -> None:
        self._require_connected(listener)
        await self.registry.unsubscribe(listener.listener_id, task_id)
        await self._push_or_drop(listener, "unsubscribed", {"task_id": task_id})

    def connection_state(self, listener_id: str) -> ListenerState:
        return self.registry.state(listener_id)

    # ── Delivery ─────────────────────────────────────────────────────

    async def dispatch(self, task_id: str, event: str, payload: Dict[str, Any]) -> int:
        """Push to every subscriber of task_id. Returns the number of successful deliveries."""
        listeners = self.registry.subscribed_listeners(task_id)
        if not listeners:
            logger.debug("No subscribers for task %s; dropping %s", task_id, event)
            return 0
        data = {"task_id": task_id, **payload, "server_timestamp": utc_now_iso()}
        return await self._deliver(listeners, event, data)

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        listeners = self.registry.listeners()
        if not listeners:
            return 0
        data = {**payload, "server_timestamp": utc_now_iso()}
        return await self._deliver(listeners, event, data)

    async def _deliver(self, listeners: List[IListener], event: str, data: Dict[str, Any]) -> int:
        results = await asyncio.gather(
            *(listener.push(event, dict(data)) for listener in listeners),
            return_exceptions=True,
        )
        delivered = 0
        for listener, result in zip(listeners, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Push of %s to listener %s failed (%s); disconnecting",
                    event, listener.listener_id, result,
                )
                await self._drop(listener)
            else:
                delivered += 1
        return delivered

    # ── Emit helpers ─────────────────────────────────────────────────

    async def emit_task_progress(
        self,
        task_id: str,
        message: str,
        progress: Optional[int] = None,
        timestamp: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        payload: Dict[str, Any] = {"message": message, "progress": progress, "timestamp": timestamp or utc_now_iso()}
        if details:
            payload["details"] = details
        return await self.dispatch(task_id, TASK_PROGRESS, payload)

    async def emit_task_status(self, task_id: str, status: str, metadata: Optional[Dict[str, Any]] = None) -> int:
        return await self.dispatch(task_id, TASK_STATUS, {"status": status, "metadata": metadata or {}})

    async def emit_file_change(
        self, task_id: str, file_path: str, operation: str, content: Optional[str] = None
    ) -> int:
        return await self.dispatch(
            task_id, TASK_FILE_CHANGE, {"file_path": file_path, "operation": operation, "content": content}
        )

    async def emit_command_result(
        self, task_id: str, command: str, exit_code: int, stdout: str = "", stderr: str = "", duration_ms: int = 0
    ) -> int:
        return await self.dispatch(
            task_id,
            TASK_COMMAND,
            {
                "command": command,
                "exit_code": exit_code,
                "stdout": stdout,
                "stderr": stderr,
                "duration_ms": duration_ms,
            },
        )

    async def emit_code_review(
        self, task_id: str, file: str, issues: List[Dict[str, Any]], suggestions: List[str]
    ) -> int:
        return await self.dispatch(
            task_id, TASK_REVIEW, {"file": file, "issues": issues, "suggestions": suggestions}
        )

    async def emit_error(self, task_id: str, message: str, recoverable: bool = False) -> int:
        return await self.dispatch(task_id, TASK_ERROR, {"message": message, "recoverable": recoverable})

    # ── Bus handlers ─────────────────────────────────────────────────

    async def _on_workflow_event(self, message: Dict[str, Any]) -> None:
        await self._relay(message, TASK_STATE_CHANGE)

    async def _on_progress_event(self, message: Dict[str, Any]) -> None:
        await self._relay(message, TASK_PROGRESS)

    async def _relay(self, message: Dict[str, Any], event: str) -> None:
        task_id = message.get("task_id")
        if not task_id:
            logger.warning("Dropping %s bus message without task_id", event)
            return
        await self.dispatch(task_id, event, {k: v for k, v in message.items() if k != "task_id"})

    # ── Internals ────────────────────────────────────────────────────

    async def _authenticate(self, credentials: Any) -> str:
        if self._authenticator is None:
            return "anonymous"
        return await self._authenticator.authenticate(credentials)

    def _require_connected(self, listener: IListener) -> None:
        if self.registry.state(listener.listener_id) is not ListenerState.AUTHENTICATED:
            raise AuthenticationError(f"Listener {listener.listener_id} is not connected")

    async def _push_or_drop(self, listener: IListener, event: str, payload: Dict[str, Any]) -> None:
        try:
            await listener.push(event, payload)
        except Exception as exc:
            logger.warning("Ack %s to listener %s failed (%s); disconnecting", event, listener.listener_id, exc)
            await self._drop(listener)

    async def _drop(self, listener: IListener) -> None:
        await self.on_disconnect(listener)
        try:
            await listener.close(GOING_AWAY_CLOSE_CODE, "delivery failed")
        except Exception:
            logger.debug("Error closing listener %s", listener.listener_id, exc_info=True)
