"""Observability utilities for logging, metrics and tracing."""

from __future__ import annotations

from typing import Optional

from .logging import configure_logging_once
from .metrics import configure_metrics_once
from .tracing import configure_tracing

_configured = False


def setup_observability(*, metrics_port: Optional[int] = None, tracing_exporter=None) -> None:
    """
    Configure logging, tracing and metrics for a worker or CLI process.

    The configuration is idempotent; subsequent calls are ignored. Tests can
    pass a custom ``tracing_exporter`` such as ``InMemorySpanExporter``.
    """

    global _configured
    if _configured:
        return

    from rollout.config import get_settings

    configure_logging_once()
    configure_metrics_once(metrics_port if metrics_port is not None else get_settings().metrics_port)
    configure_tracing(exporter=tracing_exporter)

    _configured = True
