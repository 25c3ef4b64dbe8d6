"""
Keyed locks giving each plan, ledger and stage id a single writer at a time.

``LOCK_BACKEND=local`` serializes threads of one process; ``redis`` extends
that to every worker sharing ``REDIS_URL``. Redis locks are not re-entrant,
so a holder must never take the same key twice.
"""

from contextlib import contextmanager
from typing import Iterator, Optional
import threading
import weakref

import redis
import structlog

from rollout.config import get_settings
from rollout.errors import ConflictError

logger = structlog.get_logger(__name__)

_REDIS_PREFIX = "rollout:lock:"


class LockTimeoutError(ConflictError):
    """Raised when another worker holds an entity for longer than we wait."""


def redis_client(*, decode_responses: bool = False) -> redis.Redis:
    return redis.Redis.from_url(get_settings().redis_url, decode_responses=decode_responses)


@contextmanager
def redis_lock(key: str, ttl: Optional[int] = None, wait_timeout: Optional[float] = None) -> Iterator[None]:
    settings = get_settings()
    ttl = ttl or settings.lock_ttl_seconds
    wait_timeout = wait_timeout if wait_timeout is not None else settings.lock_wait_seconds

    lock = redis_client().lock(_REDIS_PREFIX + key, timeout=ttl, blocking_timeout=wait_timeout)
    if not lock.acquire(blocking=True):
        raise LockTimeoutError(f"'{key}' is locked by another worker (waited {wait_timeout}s)")
    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockNotOwnedError:
            # held past its ttl; another worker may already own it
            logger.warning("lock.expired_before_release", key=key, ttl=ttl)


class _LocalLockRegistry:
    """
    Re-entrant locks created on demand, one per key.

    Entries are weak: a key's lock lives only while some thread holds or
    waits on it, so finished stages and releases do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


_local_locks = _LocalLockRegistry()


@contextmanager
def local_lock(key: str) -> Iterator[None]:
    with _local_locks.get(key):
        yield


@contextmanager
def entity_lock(key: str) -> Iterator[None]:
    """Hold ``key`` (e.g. ``stage:<id>``) using the configured backend."""

    if get_settings().lock_backend == "redis":
        with redis_lock(key):
            yield
    else:
        with local_lock(key):
            yield
