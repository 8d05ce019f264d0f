"""Listener transports for the fan-out gateway."""

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ListenerClosedError(ConnectionError):
    pass


class BaseListener:
    """Common close bookkeeping; subclasses implement _send and _close."""

    def __init__(self, listener_id: Optional[str] = None):
        self.listener_id = listener_id or uuid.uuid4().hex
        self.closed = False

    async def push(self, event: str, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise ListenerClosedError(f"Listener {self.listener_id} is closed")
        await self._send(event, payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        await self._close(code, reason)

    async def _send(self, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _close(self, code: int, reason: str) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.listener_id}>"


class WebSocketListener(BaseListener):
    """JSON frames of the form {"event": ..., "data": ...} over a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, listener_id: Optional[str] = None):
        super().__init__(listener_id)
        self.websocket = websocket

    async def _send(self, event: str, payload: Dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": payload})

    async def _close(self, code: int, reason: str) -> None:
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError:
            # Starlette raises once the socket is already closed.
            logger.debug("WebSocket %s already closed", self.listener_id)


class QueueListener(BaseListener):
    """Buffers events in an asyncio.Queue; used by the SSE stream and tests.

    A full queue makes push raise, which the gateway treats as a dead listener.
    """

    def __init__(self, listener_id: Optional[str] = None, maxsize: int = 1000):
        super().__init__(listener_id)
        self.queue: "asyncio.Queue[Optional[Tuple[str, Dict[str, Any]]]]" = asyncio.Queue(maxsize=maxsize)
        self.close_code: Optional[int] = None
        self.close_reason = ""

    async def _send(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait((event, payload))
        except asyncio.QueueFull:
            raise ListenerClosedError(f"Listener {self.listener_id} queue is full") from None

    async def _close(self, code: int, reason: str) -> None:
        self.close_code = code
        self.close_reason = reason
        if self.queue.full():
            # Make room for the end-of-stream marker.
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def get(self, timeout: Optional[float] = None) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Next (event, payload), or None once closed."""
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def drain(self) -> list:
        items = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not None:
                items.append(item)
        return items

    async def events(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item
