"""
Event bus on Redis Streams.

publish appends to ``<prefix>:<topic>`` with XADD. Each subscription joins a
consumer group (created with MKSTREAM) and runs its own reader task that
XREADGROUPs new entries, awaits the handler and then XACKs. Handler errors are
logged and the entry is still acknowledged; the bus does not retry.
"""

import asyncio
import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from devflow.exceptions import EventBusUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class _Reader:
    subscription_id: str
    stream: str
    group_id: str
    consumer: str
    handler: Callable
    task: Optional[asyncio.Task] = None


class RedisStreamEventBus:
    def __init__(
        self,
        redis: Redis,
        prefix: str = "devflow",
        block_ms: int = 1000,
        batch_size: int = 10,
        maxlen: Optional[int] = 10000,
    ):
        self.redis = redis
        self.prefix = prefix
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.maxlen = maxlen
        self._readers: Dict[str, _Reader] = {}

    def stream_key(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        try:
            await self.redis.xadd(
                self.stream_key(topic),
                {"payload": json.dumps(message, default=str)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as exc:
            raise EventBusUnavailableError(f"XADD to {topic} failed: {exc}") from exc

    async def subscribe(self, topic: str, group_id: str, handler: Callable) -> str:
        stream = self.stream_key(topic)
        await self._ensure_group(stream, group_id)
        subscription_id = uuid.uuid4().hex[:12]
        reader = _Reader(
            subscription_id=subscription_id,
            stream=stream,
            group_id=group_id,
            consumer=f"{group_id}-{subscription_id}",
            handler=handler,
        )
        reader.task = asyncio.create_task(self._read_loop(reader), name=f"bus:{stream}:{group_id}")
        self._readers[subscription_id] = reader
        logger.info("Subscribed %s to %s as %s", group_id, stream, reader.consumer)
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        reader = self._readers.pop(subscription_id, None)
        if reader is None or reader.task is None:
            return
        reader.task.cancel()
        await asyncio.gather(reader.task, return_exceptions=True)

    async def close(self) -> None:
        for subscription_id in list(self._readers):
            await self.unsubscribe(subscription_id)

    async def _ensure_group(self, stream: str, group_id: str) -> None:
        try:
            await self.redis.xgroup_create(stream, group_id, id="$", mkstream=True)
            logger.info("Created consumer group %s on %s", group_id, stream)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise EventBusUnavailableError(f"Cannot create group {group_id} on {stream}: {exc}") from exc
        except RedisError as exc:
            raise EventBusUnavailableError(f"Cannot create group {group_id} on {stream}: {exc}") from exc

    async def _read_loop(self, reader: _Reader) -> None:
        while True:
            try:
                batches = await self.redis.xreadgroup(
                    reader.group_id,
                    reader.consumer,
                    {reader.stream: ">"},
                    count=self.batch_size,
                    block=self.block_ms,
                )
            except RedisError:
                logger.warning("XREADGROUP on %s failed; retrying", reader.stream, exc_info=True)
                await asyncio.sleep(1.0)
                continue

            for _stream, entries in batches or []:
                for entry_id, fields in entries:
                    await self._deliver(reader, entry_id, fields)

    async def _deliver(self, reader: _Reader, entry_id: Any, fields: Dict[Any, Any]) -> None:
        raw = fields.get(b"payload") or fields.get("payload")
        try:
            if raw is None:
                logger.warning("Entry %s on %s has no payload; acknowledging", entry_id, reader.stream)
            else:
                message = json.loads(raw.decode() if isinstance(raw, bytes) else raw)
                result = reader.handler(message)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            logger.exception("Event handler failed for %s (group=%s)", reader.stream, reader.group_id)
        try:
            await self.redis.xack(reader.stream, reader.group_id, entry_id)
        except RedisError:
            logger.warning("XACK of %s on %s failed", entry_id, reader.stream, exc_info=True)
