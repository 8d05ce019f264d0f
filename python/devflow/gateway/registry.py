"""Subscription registry: which live listeners follow which tasks.

Process-local and rebuilt from scratch on restart; reconnecting listeners
re-subscribe. One asyncio.Lock guards connect/disconnect/subscribe against
concurrent dispatch snapshots.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from devflow.interfaces.transport import IListener


class ListenerState(str, Enum):
    CONNECTING = "CONNECTING"
    AUTHENTICATED = "AUTHENTICATED"
    DISCONNECTED = "DISCONNECTED"


@dataclass
class Connection:
    listener: IListener
    identity: str
    tasks: Set[str] = field(default_factory=set)


class SubscriptionRegistry:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: Dict[str, Connection] = {}
        self._subscriptions: Dict[str, Set[str]] = {}

    async def add_listener(self, listener: IListener, identity: str) -> None:
        async with self._lock:
            self._connections[listener.listener_id] = Connection(listener=listener, identity=identity)

    async def remove_listener(self, listener_id: str) -> Set[str]:
        """Drop a listener and all its subscriptions. Returns the task ids it followed."""
        async with self._lock:
            connection = self._connections.pop(listener_id, None)
            if connection is None:
                return set()
            for task_id in connection.tasks:
                self._discard(task_id, listener_id)
            return set(connection.tasks)

    async def subscribe(self, listener_id: str, task_id: str) -> bool:
        """Returns False when already subscribed. Raises KeyError for unknown listeners."""
        async with self._lock:
            connection = self._connections[listener_id]
            members = self._subscriptions.setdefault(task_id, set())
            if listener_id in members:
                return False
            members.add(listener_id)
            connection.tasks.add(task_id)
            return True

    async def unsubscribe(self, listener_id: str, task_id: str) -> bool:
        async with self._lock:
            connection = self._connections.get(listener_id)
            if connection is not None:
                connection.tasks.discard(task_id)
            return self._discard(task_id, listener_id)

    async def clear(self) -> List[IListener]:
        async with self._lock:
            listeners = [c.listener for c in self._connections.values()]
            self._connections.clear()
            self._subscriptions.clear()
            return listeners

    def _discard(self, task_id: str, listener_id: str) -> bool:
        members = self._subscriptions.get(task_id)
        if not members or listener_id not in members:
            return False
        members.discard(listener_id)
        if not members:
            del self._subscriptions[task_id]
        return True

    # Snapshots (no await between read and return, so no lock needed)

    def subscribers(self, task_id: str) -> FrozenSet[str]:
        return frozenset(self._subscriptions.get(task_id, ()))

    def subscribed_listeners(self, task_id: str) -> List[IListener]:
        return [
            self._connections[listener_id].listener
            for listener_id in self._subscriptions.get(task_id, ())
            if listener_id in self._connections
        ]

    def get_listener(self, listener_id: str) -> Optional[IListener]:
        connection = self._connections.get(listener_id)
        return connection.listener if connection else None

    def identity(self, listener_id: str) -> Optional[str]:
        connection = self._connections.get(listener_id)
        return connection.identity if connection else None

    def state(self, listener_id: str) -> ListenerState:
        if listener_id in self._connections:
            return ListenerState.AUTHENTICATED
        return ListenerState.DISCONNECTED

    def listeners(self) -> List[IListener]:
        return [c.listener for c in self._connections.values()]

    def task_ids(self) -> List[str]:
        return list(self._subscriptions)

    def __len__(self) -> int:
        return len(self._connections)
