"""
Redis Connection Management

Redis connection with graceful degradation, plus per-phone conversation
locks so that two messages from the same client are never processed
at the same time.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, LockError, TimeoutError, RedisError

from appointment_bot.config import settings

# Logger
logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "appointment-bot:v1:"


class RedisClient:
    """
    Manages Redis connection as a singleton.

    Returns None instead of raising when Redis is unreachable so callers
    can run in degraded mode.
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False


async def get_redis() -> Optional[Redis]:
    """
    Get the shared Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


class ConversationLockTimeout(Exception):
    """The conversation lock could not be acquired within the wait time."""

    def __init__(self, phone_number: str, wait: float):
        super().__init__(f"Conversation lock for {phone_number} not acquired after {wait}s")
        self.phone_number = phone_number
        self.wait = wait


class ConversationLocks:
    """
    Per-phone mutual exclusion for message processing.

    Keys (with namespace):
    - appointment-bot:v1:lock:conversation:{phone} -> Redis lock

    Uses a Redis lock so that several workers agree on ownership. When
    Redis is unavailable it falls back to an asyncio.Lock per phone,
    which only serializes within this process.

    A message is never processed without the lock. The lock lifetime
    and the wait are configured above the longest possible turn, so a
    wait that still runs out raises ConversationLockTimeout.
    """

    LOCK_PREFIX = f"{APP_PREFIX}lock:conversation:"

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        use_redis: bool = True,
        timeout: Optional[int] = None,
        wait: Optional[float] = None,
    ):
        self._redis = redis_client
        self._use_redis = use_redis
        self.timeout = timeout or settings.conversation_lock_timeout
        self.wait = wait or settings.conversation_lock_wait
        self._local_locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per phone; the entry goes when it drops to zero
        self._local_users: dict[str, int] = {}

    def _key(self, phone_number: str) -> str:
        """Generate lock key with namespace."""
        return f"{self.LOCK_PREFIX}{phone_number}"

    async def _get_redis(self) -> Optional[Redis]:
        if self._redis is not None:
            return self._redis
        if not self._use_redis:
            return None
        return await get_redis()

    @asynccontextmanager
    async def hold(self, phone_number: str) -> AsyncIterator[None]:
        """
        Hold the lock for one phone number.

        Usage:
            async with locks.hold(phone):
                ...

        Raises:
            ConversationLockTimeout: The lock stayed busy for the whole wait
        """
        client = await self._get_redis()
        if client is not None:
            lock = client.lock(
                self._key(phone_number),
                timeout=self.timeout,
                blocking_timeout=self.wait,
            )
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                logger.warning(f"Redis lock failed for {phone_number}, using local lock: {e}")
            else:
                if not acquired:
                    logger.error(f"Lock wait exceeded for {phone_number}")
                    raise ConversationLockTimeout(phone_number, self.wait)
                try:
                    yield
                finally:
                    await self._release_redis(lock, phone_number)
                return

        async with self._hold_local(phone_number):
            yield

    async def _release_redis(self, lock, phone_number: str) -> None:
        try:
            await lock.release()
        except LockError as e:
            # Expired before release
            logger.warning(f"Lock for {phone_number} was lost before release: {e}")
        except RedisError as e:
            logger.error(f"Failed to release lock for {phone_number}: {e}")

    @asynccontextmanager
    async def _hold_local(self, phone_number: str) -> AsyncIterator[None]:
        local = self._local_locks.setdefault(phone_number, asyncio.Lock())
        self._local_users[phone_number] = self._local_users.get(phone_number, 0) + 1
        try:
            try:
                await asyncio.wait_for(local.acquire(), timeout=self.wait)
            except asyncio.TimeoutError:
                logger.error(f"Local lock wait exceeded for {phone_number}")
                raise ConversationLockTimeout(phone_number, self.wait) from None
            try:
                yield
            finally:
                local.release()
        finally:
            self._local_users[phone_number] -= 1
            if not self._local_users[phone_number]:
                del self._local_users[phone_number]
                del self._local_locks[phone_number]


# Singleton
_locks: Optional[ConversationLocks] = None


def get_conversation_locks() -> ConversationLocks:
    """Get singleton ConversationLocks."""
    global _locks
    if _locks is None:
        _locks = ConversationLocks()
    return _locks


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
