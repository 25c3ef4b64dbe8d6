"""
Per-stage command channels.

A stage waiting for approval blocks on its channel until an ``approve`` or
``deny`` payload is published for it. Two backends are available:

- ``redis``: a Redis list per key, read with ``BLPOP`` (survives restarts)
- ``local``: an in-process ``queue.Queue`` per key
"""

from __future__ import annotations

import queue
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis
import structlog

from rollout.config import get_settings
from rollout.utils.locks import redis_client

logger = structlog.get_logger(__name__)

_KEY_PREFIX = "stage-events:"


def stage_event_key(stage_id: str) -> str:
    """Channel key for the user commands addressed to one stage."""

    return f"{_KEY_PREFIX}{stage_id}"


class EventChannel(ABC):
    """Keyed FIFO channel with blocking reads."""

    @abstractmethod
    def publish(self, key: str, payload: str) -> None:
        """Append a payload to the channel."""

    @abstractmethod
    def wait(self, key: str, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a payload is available; ``None`` only on timeout."""

    @abstractmethod
    def purge(self, key: str) -> None:
        """Drop every pending payload for the key."""


class LocalEventChannel(EventChannel):
    def __init__(self):
        self._guard = threading.Lock()
        self._queues: Dict[str, "queue.Queue[str]"] = {}

    def _queue(self, key: str) -> "queue.Queue[str]":
        with self._guard:
            channel = self._queues.get(key)
            if channel is None:
                channel = self._queues[key] = queue.Queue()
            return channel

    def publish(self, key: str, payload: str) -> None:
        self._queue(key).put(payload)

    def wait(self, key: str, timeout: Optional[float] = None) -> Optional[str]:
        try:
            return self._queue(key).get(timeout=timeout)
        except queue.Empty:
            return None

    def purge(self, key: str) -> None:
        with self._guard:
            self._queues.pop(key, None)


class RedisEventChannel(EventChannel):
    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis_client(decode_responses=True)

    def publish(self, key: str, payload: str) -> None:
        self.client.rpush(key, payload)

    def wait(self, key: str, timeout: Optional[float] = None) -> Optional[str]:
        # BLPOP treats 0 as "block forever"
        item = self.client.blpop([key], timeout=0 if timeout is None else timeout)
        if item is None:
            return None
        _, payload = item
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        return payload

    def purge(self, key: str) -> None:
        self.client.delete(key)


_channel: Optional[EventChannel] = None
_channel_lock = threading.Lock()


def get_event_channel() -> EventChannel:
    """Return the process-wide channel selected by ``EVENT_BACKEND``."""

    global _channel
    with _channel_lock:
        if _channel is None:
            backend = get_settings().event_backend
            if backend == "redis":
                _channel = RedisEventChannel()
            elif backend == "local":
                _channel = LocalEventChannel()
            else:
                raise ValueError(f"Unknown event backend '{backend}'")
            logger.info("events.channel.configured", backend=backend)
        return _channel


def reset_event_channel() -> None:
    global _channel
    with _channel_lock:
        _channel = None
