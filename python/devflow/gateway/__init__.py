"""Event fan-out to live listeners."""

from devflow.gateway.auth import TokenAuthenticator
from devflow.gateway.fanout import EventFanOutGateway
from devflow.gateway.listeners import BaseListener, ListenerClosedError, QueueListener, WebSocketListener
from devflow.gateway.registry import ListenerState, SubscriptionRegistry

__all__ = [
    "BaseListener",
    "EventFanOutGateway",
    "ListenerClosedError",
    "ListenerState",
    "QueueListener",
    "SubscriptionRegistry",
    "TokenAuthenticator",
    "WebSocketListener",
]
