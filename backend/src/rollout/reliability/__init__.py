"""SLO definitions and evaluation for release gating."""

from .slo import (
    DEFAULT_PLAN,
    LatencyMetrics,
    SLOEvaluationResult,
    SLOViolation,
    load_default_plan,
    parse_slos,
)
from .evaluator import describe_violations, evaluate_slos

__all__ = [
    "DEFAULT_PLAN",
    "LatencyMetrics",
    "SLOEvaluationResult",
    "SLOViolation",
    "load_default_plan",
    "parse_slos",
    "describe_violations",
    "evaluate_slos",
]
