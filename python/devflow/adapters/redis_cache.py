"""Redis-backed workflow state cache."""

import json
import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from devflow.exceptions import CacheUnavailableError

logger = logging.getLogger(__name__)


class RedisStateCache:
    """JSON values under ``<prefix><task_id>`` with a per-key TTL."""

    def __init__(self, redis: Redis, prefix: str = "workflow:state:", default_ttl: int = 3600):
        self.redis = redis
        self.prefix = prefix
        self.default_ttl = default_ttl

    def key(self, task_id: str) -> str:
        return f"{self.prefix}{task_id}"

    async def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(self.key(task_id))
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache read failed for {task_id}: {exc}") from exc
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return json.loads(raw)

    async def set(self, task_id: str, state: Dict[str, Any], ttl: Optional[int] = None) -> None:
        try:
            await self.redis.set(self.key(task_id), json.dumps(state), ex=ttl or self.default_ttl)
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache write failed for {task_id}: {exc}") from exc

    async def delete(self, task_id: str) -> None:
        try:
            await self.redis.delete(self.key(task_id))
        except RedisError as exc:
            raise CacheUnavailableError(f"Cache delete failed for {task_id}: {exc}") from exc
