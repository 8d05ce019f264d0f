"""Interfaces for live listener connections and their authentication."""

from typing import Any, Dict, Protocol


class IListener(Protocol):
    """One live subscriber connection (websocket, SSE stream, ...)."""

    listener_id: str

    async def push(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver one event. Raises when the connection is gone."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


class IAuthenticator(Protocol):
    async def authenticate(self, credentials: Any) -> str:
        """Return the caller identity or raise AuthenticationError."""
        ...
