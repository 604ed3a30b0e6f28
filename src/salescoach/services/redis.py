import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisStore:
    """JSON documents in Redis. Unreachable Redis degrades to a no-op store."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Redis | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the connection and ping it. Idempotent."""
        if self._client is not None:
            return
        client = Redis.from_url(self._url, decode_responses=True)
        try:
            await client.ping()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await client.aclose()
            raise
        self._client = client
        logger.info("Redis connection established: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def get_json(self, key: str) -> Any | None:
        """Return the decoded document at key, or None if missing, unreadable or offline."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding unreadable value at %s: %s", key, e)
            return None

    async def put_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        if self._client is None:
            return False
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("Serialization for %s failed: %s", key, e)
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, payload)
            else:
                await self._client.set(key, payload)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. True if it was deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False


def get_redis_store() -> RedisStore | None:
    """Return a store if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisStore(settings.redis_url.strip())
