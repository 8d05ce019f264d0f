"""Lightweight in-memory event bus satisfying the IEventBus protocol.

Used for intra-process pub/sub between the state machine, the orchestrator
and the fan-out gateway when no Redis is configured.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _Subscription:
    subscription_id: str
    topic: str
    group_id: str
    handler: Callable


@dataclass
class _Group:
    topic: str
    group_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    members: List[_Subscription] = field(default_factory=list)
    cursor: int = 0
    task: Optional[asyncio.Task] = None


class InMemoryEventBus:
    """Simple async event bus for single-process use.

    publish only enqueues. Each consumer group has its own queue and worker
    task, so a slow handler never holds up the publisher, and messages reach
    a group in publish order. Every group receives each message once; inside
    a group the subscriptions take turns. Handler errors are logged and not
    retried.
    """

    def __init__(self) -> None:
        self._groups: Dict[Tuple[str, str], _Group] = {}
        self._subscriptions: Dict[str, _Subscription] = {}

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        for group in list(self._groups.values()):
            if group.topic == topic and group.members:
                group.queue.put_nowait(message)

    async def subscribe(self, topic: str, group_id: str, handler: Callable) -> str:
        sub_id = uuid.uuid4().hex[:12]
        subscription = _Subscription(subscription_id=sub_id, topic=topic, group_id=group_id, handler=handler)
        group = self._groups.get((topic, group_id))
        if group is None:
            group = self._groups[(topic, group_id)] = _Group(topic=topic, group_id=group_id)
            group.task = asyncio.create_task(self._deliver_loop(group), name=f"bus:{topic}:{group_id}")
        group.members.append(subscription)
        self._subscriptions[sub_id] = subscription
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return
        group = self._groups.get((subscription.topic, subscription.group_id))
        if group is not None and subscription in group.members:
            group.members.remove(subscription)

    async def join(self) -> None:
        """Wait until every message published so far has been handled."""
        await asyncio.gather(*(group.queue.join() for group in list(self._groups.values())))

    async def close(self) -> None:
        tasks = [group.task for group in self._groups.values() if group.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._groups.clear()
        self._subscriptions.clear()

    async def _deliver_loop(self, group: _Group) -> None:
        while True:
            message = await group.queue.get()
            try:
                if group.members:
                    subscription = group.members[group.cursor % len(group.members)]
                    group.cursor += 1
                    await self._deliver(subscription, message)
            finally:
                group.queue.task_done()

    async def _deliver(self, subscription: _Subscription, message: Dict[str, Any]) -> None:
        try:
            if inspect.iscoroutinefunction(subscription.handler):
                await subscription.handler(message)
            else:
                subscription.handler(message)
        except Exception:
            logger.exception(
                "Event handler failed for topic=%s group=%s", subscription.topic, subscription.group_id
            )
