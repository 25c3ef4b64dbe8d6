import gc
import threading

import pytest

from rollout.config import get_settings
from rollout.errors import ConflictError
from rollout.utils import locks


class FakeRedisLock:
    def __init__(self, log, acquired=True, expired=False):
        self.log = log
        self.acquired = acquired
        self.expired = expired

    def acquire(self, blocking=True):
        self.log.append("acquire")
        return self.acquired

    def release(self):
        self.log.append("release")
        if self.expired:
            raise locks.redis.exceptions.LockNotOwnedError("expired")


class FakeRedis:
    def __init__(self, **lock_kwargs):
        self.log = []
        self.lock_kwargs = lock_kwargs

    def lock(self, name, timeout, blocking_timeout):
        self.log.append((name, timeout, blocking_timeout))
        return FakeRedisLock(self.log, **self.lock_kwargs)


@pytest.fixture
def fake_redis(monkeypatch):
    def install(**lock_kwargs):
        client = FakeRedis(**lock_kwargs)
        monkeypatch.setattr(locks, "redis_client", lambda **kwargs: client)
        return client

    return install


def test_redis_lock_uses_settings_for_ttl_and_wait(monkeypatch, fake_redis):
    monkeypatch.setenv("LOCK_TTL_SECONDS", "30")
    monkeypatch.setenv("LOCK_WAIT_SECONDS", "2.5")
    get_settings.cache_clear()
    client = fake_redis()

    with locks.redis_lock("stage:release-abcd1234-order-1"):
        assert client.log == [("rollout:lock:stage:release-abcd1234-order-1", 30, 2.5), "acquire"]

    assert client.log[-1] == "release"


def test_redis_lock_timeout_is_a_conflict(fake_redis):
    fake_redis(acquired=False)

    with pytest.raises(ConflictError, match="locked by another worker"):
        with locks.redis_lock("ledger:default", wait_timeout=1):
            pytest.fail("body must not run without the lock")


def test_redis_lock_expired_before_release_is_tolerated(fake_redis):
    client = fake_redis(expired=True)
    ran = []

    with locks.redis_lock("plan:default", ttl=1):
        ran.append(True)

    assert ran == [True]
    assert client.log[-1] == "release"


def test_redis_client_reads_redis_url(monkeypatch):
    calls = {}

    class DummyRedis:
        @staticmethod
        def from_url(url, decode_responses):
            calls["url"] = url
            calls["decode"] = decode_responses
            return "client"

    monkeypatch.setenv("REDIS_URL", "redis://cache:6380/5")
    get_settings.cache_clear()
    monkeypatch.setattr(locks.redis, "Redis", DummyRedis)

    assert locks.redis_client(decode_responses=True) == "client"
    assert calls == {"url": "redis://cache:6380/5", "decode": True}


def test_entity_lock_serializes_same_key():
    order = []
    inside = threading.Event()
    release = threading.Event()

    def holder():
        with locks.entity_lock("plan:one"):
            inside.set()
            release.wait(timeout=5)
            order.append("holder")

    def contender():
        inside.wait(timeout=5)
        with locks.entity_lock("plan:one"):
            order.append("contender")

    first = threading.Thread(target=holder)
    second = threading.Thread(target=contender)
    first.start()
    second.start()
    inside.wait(timeout=5)
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert order == ["holder", "contender"]


def test_entity_lock_does_not_block_other_keys():
    with locks.entity_lock("stage:a"):
        acquired = threading.Event()

        def other():
            with locks.entity_lock("stage:b"):
                acquired.set()

        worker = threading.Thread(target=other)
        worker.start()
        worker.join(timeout=5)

    assert acquired.is_set()


def test_entity_lock_uses_redis_backend(monkeypatch, fake_redis):
    monkeypatch.setenv("LOCK_BACKEND", "redis")
    get_settings.cache_clear()
    client = fake_redis()

    with locks.entity_lock("release:1"):
        pass

    assert client.log[0][0] == "rollout:lock:release:1"
    assert client.log[1:] == ["acquire", "release"]


def test_local_lock_registry_forgets_released_keys():
    registry = locks._LocalLockRegistry()
    key = "stage:release-abcd1234-order-1"

    held = registry.get(key)
    assert registry.get(key) is held
    assert len(registry) == 1

    with held:
        pass
    del held
    gc.collect()

    assert len(registry) == 0
    assert registry.get(key) is not None
