import pytest

import rollout.events as events
from rollout.config import get_settings


def test_stage_event_key():
    assert events.stage_event_key("release-abcd1234-order-1") == "stage-events:release-abcd1234-order-1"


def test_local_channel_is_fifo_per_key():
    channel = events.LocalEventChannel()
    channel.publish("a", "approve")
    channel.publish("a", "deny")
    channel.publish("b", "deny")

    assert channel.wait("a") == "approve"
    assert channel.wait("a") == "deny"
    assert channel.wait("b") == "deny"
    assert channel.wait("a", timeout=0.01) is None


def test_local_channel_purge():
    channel = events.LocalEventChannel()
    channel.publish("a", "deny")
    channel.purge("a")
    assert channel.wait("a", timeout=0.01) is None


def test_redis_channel_uses_lists():
    calls = []

    class DummyClient:
        def rpush(self, key, payload):
            calls.append(("rpush", key, payload))

        def blpop(self, keys, timeout):
            calls.append(("blpop", keys, timeout))
            return (keys[0].encode(), b"approve")

        def delete(self, key):
            calls.append(("delete", key))

    channel = events.RedisEventChannel(client=DummyClient())
    channel.publish("stage-events:s1", "approve")
    assert channel.wait("stage-events:s1") == "approve"
    channel.purge("stage-events:s1")

    assert calls == [
        ("rpush", "stage-events:s1", "approve"),
        ("blpop", ["stage-events:s1"], 0),
        ("delete", "stage-events:s1"),
    ]


def test_redis_channel_timeout_returns_none():
    class DummyClient:
        def blpop(self, keys, timeout):
            return None

    channel = events.RedisEventChannel(client=DummyClient())
    assert channel.wait("k", timeout=1) is None


def test_get_event_channel_follows_backend(monkeypatch):
    assert isinstance(events.get_event_channel(), events.LocalEventChannel)
    assert events.get_event_channel() is events.get_event_channel()

    events.reset_event_channel()
    monkeypatch.setenv("EVENT_BACKEND", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        events.get_event_channel()
