"""Distributed per-deal operation locks on Redis.

A lock is a key ``deal:{id}:operation:{op}`` holding a random token with a
millisecond TTL. Only the holder of the token may extend or delete it.
When Redis cannot be reached the protected work still runs: the row lock
taken inside the store transaction keeps it safe.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import backoff
from redis import exceptions as redis_exceptions
from redis.asyncio import Redis

from deals.exceptions import Reason

logger = logging.getLogger(__name__)

# Errors meaning the coordination backend is unreachable, not that the lock is taken
BACKEND_ERRORS = (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError, OSError)

RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
else
  return 0
end
"""

EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
else
  return 0
end
"""

class LockError(Exception):
    """Base exception for lock errors"""
    reason = Reason.UNKNOWN_ERROR

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)

class LockAcquireError(LockError):
    """Raised when the lock is held by someone else"""
    reason = Reason.CONCURRENT_PROCESSING

    def __init__(self, key: str):
        super().__init__(f"Failed to acquire distributed lock: {key}", key)

class LockLostError(LockError):
    """Raised when a held lease expired or was taken over mid-operation"""
    reason = Reason.LOCK_LOST

    def __init__(self, key: str):
        super().__init__(f"Distributed lock lost while running: {key}", key)

class Lease:
    """A held lock: the key, our token and the TTL it was granted with."""

    def __init__(self, key: str, token: str, ttl_ms: int):
        self.key = key
        self.token = token
        self.ttl_ms = ttl_ms
        self.acquired_at = time.monotonic()

    def __repr__(self) -> str:
        return f"Lease(key={self.key!r}, ttl_ms={self.ttl_ms})"

class DistributedLock:
    """Lease locks keyed by deal and operation.

    Args:
        redis: A ``redis.asyncio.Redis`` client
        default_ttl_ms: Lease length when the caller does not give one
        retry_delay: Base delay in seconds between acquire retries
        extension_threshold_ms: Extend a lease this long before it expires
    """

    def __init__(
        self,
        redis,
        default_ttl_ms: int = 30000,
        retry_delay: float = 0.1,
        extension_threshold_ms: int = 500
    ):
        self.redis = redis
        self.default_ttl_ms = default_ttl_ms
        self.retry_delay = retry_delay
        self.extension_threshold_ms = extension_threshold_ms

    @staticmethod
    def key(deal_id: int, operation: str) -> str:
        return f"deal:{deal_id}:operation:{operation}"

    async def acquire(self, key: str, ttl_ms: Optional[int] = None, max_retries: int = 0) -> Lease:
        """Acquire a lease on key.

        Fails fast by default. With max_retries the attempt is repeated with
        jittered exponential backoff before giving up.

        Raises:
            LockAcquireError: If another holder owns the key
            redis.exceptions.ConnectionError: If the backend is unreachable
        """
        ttl_ms = ttl_ms or self.default_ttl_ms

        async def attempt() -> Lease:
            token = uuid.uuid4().hex
            if not await self.redis.set(key, token, nx=True, px=ttl_ms):
                raise LockAcquireError(key)
            return Lease(key, token, ttl_ms)

        if max_retries > 0:
            attempt = backoff.on_exception(
                backoff.expo,
                LockAcquireError,
                max_tries=max_retries + 1,
                jitter=backoff.full_jitter,
                factor=self.retry_delay,
                max_value=2.0,
                logger=None
            )(attempt)

        lease = await attempt()
        logger.debug(f"Acquired lock {key} for {ttl_ms}ms")
        return lease

    async def release(self, lease: Lease) -> bool:
        """Delete the key if it still holds our token."""
        released = bool(await self.redis.eval(RELEASE_SCRIPT, 1, lease.key, lease.token))
        if not released:
            logger.debug(f"Lock {lease.key} was no longer ours at release")
        return released

    async def extend(self, lease: Lease, ttl_ms: Optional[int] = None) -> bool:
        """Push the expiry out if the key still holds our token."""
        ttl_ms = ttl_ms or lease.ttl_ms
        extended = bool(await self.redis.eval(EXTEND_SCRIPT, 1, lease.key, lease.token, ttl_ms))
        if extended:
            lease.ttl_ms = ttl_ms
        return extended

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except BACKEND_ERRORS:
            return False

    async def with_lock(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
        max_retries: int = 0
    ) -> Any:
        """Run fn while holding a lease on key.

        The lease is extended while fn runs. If an extension finds the key no
        longer ours, fn is cancelled and LockLostError raised. The lease is
        released on every exit path. If the backend is unreachable at acquire
        time, fn runs without a lease.

        Raises:
            LockAcquireError: If the key is held elsewhere
            LockLostError: If the lease was lost while fn ran
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        try:
            lease = await self.acquire(key, ttl_ms, max_retries)
        except BACKEND_ERRORS as e:
            logger.warning(f"Lock backend unavailable for {key}, running without lease: {e}")
            return await fn()

        task = asyncio.ensure_future(fn())
        lost = False
        try:
            interval = max(ttl_ms - self.extension_threshold_ms, ttl_ms // 2) / 1000
            while True:
                done, _ = await asyncio.wait({task}, timeout=interval)
                if done:
                    return task.result()

                try:
                    extended = await self.extend(lease, ttl_ms)
                except BACKEND_ERRORS as e:
                    logger.warning(f"Could not extend lock {key}: {e}")
                    continue

                if not extended:
                    lost = True
                    logger.error(f"Lost lock {key} while operation was running")
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    raise LockLostError(key)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            if not lost:
                try:
                    await self.release(lease)
                except BACKEND_ERRORS as e:
                    logger.warning(f"Could not release lock {key}, it will expire: {e}")

def connect(redis_url: str) -> Redis:
    """Create a redis.asyncio client for the lock service."""
    return Redis.from_url(redis_url, decode_responses=True)

__all__ = [
    'DistributedLock', 'Lease', 'LockError', 'LockAcquireError', 'LockLostError',
    'BACKEND_ERRORS', 'connect',
]
