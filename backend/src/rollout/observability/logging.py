"""JSON logging for workers and the CLI."""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from rollout.config import get_settings

from .tracing import current_trace_ids

_logging_configured = False


def add_trace_ids(logger, method_name, event_dict):
    """Stamp events logged inside a workflow span with its trace and span ids."""

    for key, value in current_trace_ids().items():
        event_dict.setdefault(key, value)
    return event_dict


def configure_logging_once(level: Optional[str] = None) -> None:
    """Route structlog and stdlib logging to one JSON stream; idempotent."""

    global _logging_configured
    if _logging_configured:
        return

    numeric_level = getattr(logging, (level or get_settings().log_level).upper(), logging.INFO)

    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_ids,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
    # celery, urllib3 and sqlalchemy log through stdlib
    logging.basicConfig(level=numeric_level, format="%(message)s")

    _logging_configured = True
