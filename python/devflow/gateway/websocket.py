"""WebSocket session loop for the fan-out gateway.

Client frames are JSON objects ``{"event": "subscribe:task", "data": {"task_id": "..."}}``
(or ``unsubscribe:task``). Anything else is answered with an ``error`` event.
"""

import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from devflow.exceptions import AuthenticationError
from devflow.gateway.fanout import GOING_AWAY_CLOSE_CODE, EventFanOutGateway
from devflow.gateway.listeners import WebSocketListener

logger = logging.getLogger(__name__)

SUBSCRIBE = "subscribe:task"
UNSUBSCRIBE = "unsubscribe:task"


async def serve_websocket(websocket: WebSocket, gateway: EventFanOutGateway, credentials: Optional[str]) -> None:
    await websocket.accept()
    listener = WebSocketListener(websocket)
    if not await gateway.on_connect(listener, credentials):
        return

    try:
        while True:
            frame = await websocket.receive_json()
            await _handle_frame(gateway, listener, frame)
    except WebSocketDisconnect:
        pass
    except ValueError:
        # receive_json raises on a non-JSON text frame
        logger.info("Listener %s sent a malformed frame; closing", listener.listener_id)
        await listener.close(1003, "malformed frame")
    except AuthenticationError:
        # Dropped by the gateway after a failed push.
        logger.info("Listener %s is no longer connected; closing", listener.listener_id)
        await listener.close(GOING_AWAY_CLOSE_CODE, "listener dropped")
    finally:
        listener.closed = True
        await gateway.on_disconnect(listener)


async def _handle_frame(gateway: EventFanOutGateway, listener: WebSocketListener, frame: Any) -> None:
    if not isinstance(frame, dict):
        await listener.push("error", {"message": "Frames must be JSON objects"})
        return

    event = frame.get("event")
    data = frame.get("data") or {}
    task_id = data.get("task_id") if isinstance(data, dict) else None

    if event not in (SUBSCRIBE, UNSUBSCRIBE):
        await listener.push("error", {"message": f"Unknown event: {event}"})
        return
    if not task_id:
        await listener.push("error", {"message": f"{event} requires task_id"})
        return

    if event == SUBSCRIBE:
        await gateway.subscribe(listener, str(task_id))
    else:
        await gateway.unsubscribe(listener, str(task_id))
