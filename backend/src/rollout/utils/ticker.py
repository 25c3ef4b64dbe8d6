"""Background timers that refresh elapsed-time display fields."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Optional

import structlog

from rollout.config import get_settings

logger = structlog.get_logger(__name__)


class ElapsedTicker:
    """
    Re-arms a timer per key while its callback reports the entity is active.

    The callback returns ``True`` to keep ticking. Ticking only refreshes
    display fields; nothing relies on it for correctness.
    """

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    def arm(self, key: str, callback: Callable[[], bool]) -> None:
        if not self.enabled:
            return
        with self._lock:
            existing = self._timers.get(key)
            if existing is not None and existing.is_alive():
                return
            timer = threading.Timer(self.interval_seconds, self._fire, args=(key, callback))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def disarm(self, key: str) -> None:
        with self._lock:
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def armed(self, key: str) -> bool:
        with self._lock:
            return key in self._timers

    def _fire(self, key: str, callback: Callable[[], bool]) -> None:
        with self._lock:
            self._timers.pop(key, None)
        try:
            keep_going = callback()
        except Exception as exc:
            logger.warning("ticker.callback.failed", key=key, error=str(exc))
            return
        if keep_going:
            self.arm(key, callback)


_ticker: Optional[ElapsedTicker] = None


def get_ticker() -> ElapsedTicker:
    """Return the process-wide ticker configured from ``TICK_INTERVAL_SECONDS``."""

    global _ticker
    if _ticker is None:
        _ticker = ElapsedTicker(get_settings().tick_interval_seconds)
    return _ticker
