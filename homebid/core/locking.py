"""Per-key exclusive sections and reservations for lifecycle transitions.

Each contract (or job, for bid acceptance) gets its own ``asyncio.Lock``
so unrelated contracts never wait on each other. Locks are dropped once
nobody holds or waits on them.

A transaction only waits on a keyed lock while it holds no row locks on
the contract: the reads that decide are plain, and ``FOR UPDATE`` plus
every write happen in the single section that records the outcome.

Work that runs outside the lock (gateway calls, dispute resolution) is
reserved instead. The in-process marker lives as long as the operation.
The Redis marker (``SET NX EX``) belongs to the database session and is
dropped by ``release_reservations`` after commit or rollback, so another
worker cannot act on state this session has not committed yet.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.common.exceptions import ConflictError, ExternalServiceError
from homebid.common.logging import get_logger
from homebid.config import settings

logger = get_logger("core.locking")

SESSION_TOKEN = "reservation_token"
SESSION_KEYS = "reservation_keys"

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    """Drop the shared client. Celery tasks run each body on a fresh event loop."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _session_token(db: AsyncSession) -> str:
    return db.info.setdefault(SESSION_TOKEN, uuid.uuid4().hex)


class KeyedLock:
    def __init__(self, name: str):
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key) -> AsyncIterator[None]:
        key = str(key)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] = self._refs.get(key, 0) + 1
        if lock.locked():
            logger.debug("Waiting for %s lock %s", self.name, key)
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def is_locked(self, key) -> bool:
        lock = self._locks.get(str(key))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class Reservations:
    """Claims on a key for work that runs outside the keyed lock."""

    def __init__(self, name: str, ttl_seconds: int | None = None):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._local: dict[str, str] = {}

    def _redis_key(self, key: str) -> str:
        return f"homebid:reservation:{self.name.lower()}:{key}"

    async def _holder(self, key: str) -> tuple[str, str] | None:
        try:
            value = await get_redis().get(self._redis_key(key))
        except RedisError as e:
            logger.error("Reservation store unavailable for %s %s: %s", self.name, key, e)
            raise ExternalServiceError("redis", str(e)) from e
        if value is None:
            return None
        token, _, operation = value.partition(":")
        return token, operation

    async def claim(self, db: AsyncSession, key, operation: str) -> bool:
        """Take the key for ``operation``. False when someone else holds it.

        Re-entrant across operations of the same session, never within one
        process while an operation on the key is still running.
        """
        key = str(key)
        if key in self._local:
            return False

        token = _session_token(db)
        redis_key = self._redis_key(key)
        ttl = self.ttl_seconds or settings.RESERVATION_TTL_SECONDS
        try:
            was_set = await get_redis().set(redis_key, f"{token}:{operation}", nx=True, ex=ttl)
        except RedisError as e:
            logger.error("Reservation store unavailable for %s %s: %s", self.name, key, e)
            raise ExternalServiceError("redis", str(e)) from e
        if not was_set:
            holder = await self._holder(key)
            if holder is not None and holder[0] != token:
                logger.info("%s %s is reserved by another worker (%s)", self.name, key, holder[1])
                return False

        # No await between this check and the write.
        if key in self._local:
            return False
        self._local[key] = operation
        db.info.setdefault(SESSION_KEYS, set()).add(redis_key)
        return True

    async def reserve(self, db: AsyncSession, key, operation: str) -> None:
        if not await self.claim(db, key, operation):
            raise ConflictError(f"{self.name} operation '{self.current(key) or 'unknown'}' already in progress")

    async def ensure_idle(self, db: AsyncSession, key) -> None:
        key = str(key)
        current = self._local.get(key)
        if current is None:
            holder = await self._holder(key)
            if holder is not None and holder[0] != _session_token(db):
                current = holder[1]
        if current is not None:
            raise ConflictError(f"{self.name} operation '{current}' already in progress")

    def finish(self, key) -> None:
        """End the in-process part; the Redis part stays until the session ends."""
        self._local.pop(str(key), None)

    def current(self, key) -> str | None:
        return self._local.get(str(key))


async def release_reservations(db: AsyncSession) -> None:
    """Drop the Redis reservations taken through ``db``. Call after commit or rollback."""
    keys = db.info.pop(SESSION_KEYS, set())
    token = db.info.pop(SESSION_TOKEN, None)
    if not keys:
        return
    try:
        r = get_redis()
        for redis_key in keys:
            value = await r.get(redis_key)
            if value is not None and value.partition(":")[0] == token:
                await r.delete(redis_key)
    except RedisError as e:
        logger.warning("Could not release %d reservations, leaving them to expire: %s", len(keys), e)


contract_locks = KeyedLock("contract")
job_locks = KeyedLock("job")
escrow_in_flight = Reservations("Escrow")
dispute_claims = Reservations("Dispute")
