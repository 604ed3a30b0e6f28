import logging

from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import Session
from ..settings import get_settings
from ..trainer.reconciler import acknowledged
from .redis import RedisStore, get_redis_store

logger = logging.getLogger(__name__)

SNAPSHOT_KEY_PREFIX = "salescoach:session:"


class SnapshotService:
    """Keeps the last acknowledged session per seller so a restarted client can resume it.

    Only server-acknowledged documents are stored; optimistic entries are
    stripped before saving.
    """

    def __init__(self, store: RedisStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl = ttl_seconds

    def _key(self, seller_email: str) -> str:
        return f"{SNAPSHOT_KEY_PREFIX}{seller_email.strip().lower()}"

    async def load(self, seller_email: str) -> Session | None:
        data = await self._store.get_json(self._key(seller_email))
        if data is None:
            return None
        try:
            return Session.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid snapshot for %s: %s", seller_email, e)
            return None

    async def save(self, session: Session) -> bool:
        return await self._store.put_json(
            self._key(session.seller_email),
            acknowledged(session).model_dump(mode="json"),
            ttl_seconds=self._ttl,
        )

    async def discard(self, seller_email: str) -> bool:
        return await self._store.delete(self._key(seller_email))

    async def close(self) -> None:
        await self._store.close()


async def get_snapshot_service_async() -> SnapshotService | None:
    """Connect to Redis and return a snapshot service, or None when not configured/unreachable."""
    store = get_redis_store()
    if store is None:
        return None
    try:
        await store.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        logger.warning("Session snapshots unavailable (Redis): %s", e)
        return None
    return SnapshotService(store=store, ttl_seconds=get_settings().snapshot_ttl_seconds)
