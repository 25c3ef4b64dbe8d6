"""Timestamp helpers shared by the ledger and stage records."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid deprecated datetime.utcnow()."""
    return datetime.now(UTC)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def elapsed_seconds(started: str, ended: Optional[str] = None) -> int:
    """Whole seconds between two ISO timestamps (``ended`` defaults to now)."""

    start = parse_timestamp(started)
    end = parse_timestamp(ended) if ended else utcnow()
    return max(0, math.floor((end - start).total_seconds()))
