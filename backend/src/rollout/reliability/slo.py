"""Latency SLO types and the default release plan catalog."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

import yaml

from rollout.schemas import PERCENTILE_ALIASES, Percentile, SLO


DEFAULT_PLAN: Dict[str, Any] = {
    "stages": [
        {"order": 1, "description": "", "target_percent": 10, "soak_time": 60, "auto_progress": False},
        {"order": 2, "description": "", "target_percent": 50, "soak_time": 60, "auto_progress": False},
        {"order": 3, "description": "", "target_percent": 100, "soak_time": 60, "auto_progress": False},
    ],
    "slos": [{"percentile": "p999", "latency_ms": 100}],
    "worker_name": "my-worker",
    "polling_fraction": 0.5,
}


@dataclass(frozen=True)
class LatencyMetrics:
    """Observed wall-time percentiles in milliseconds."""

    p999: float = 0.0
    p99: float = 0.0
    p90: float = 0.0
    median: float = 0.0

    def value_for(self, percentile: Percentile | str) -> float:
        key = percentile.value if isinstance(percentile, Percentile) else str(percentile)
        key = PERCENTILE_ALIASES.get(key, key)
        if key not in {p.value for p in Percentile}:
            raise ValueError(f"Unknown percentile: {key}")
        return getattr(self, key)


@dataclass(frozen=True)
class SLOViolation:
    percentile: str
    expected_max_ms: float
    actual_ms: float
    violation_margin_ms: float

    def describe(self) -> str:
        return f"{self.percentile} {_fmt(self.actual_ms)}ms > {_fmt(self.expected_max_ms)}ms"


@dataclass(frozen=True)
class SLOEvaluationResult:
    passed: bool
    violations: List[SLOViolation] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "summary": self.summary,
            "violations": [violation.__dict__ for violation in self.violations],
        }


def _fmt(value: float) -> str:
    return f"{value:g}"


def parse_slos(raw: Iterable[Any]) -> List[SLO]:
    """Keep the well-formed SLO entries of a stored plan record."""

    parsed: List[SLO] = []
    for entry in raw or []:
        if isinstance(entry, SLO):
            parsed.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        percentile = PERCENTILE_ALIASES.get(entry.get("percentile"), entry.get("percentile"))
        latency = entry.get("latency_ms")
        if percentile not in {p.value for p in Percentile}:
            continue
        if isinstance(latency, bool) or not isinstance(latency, (int, float)) or latency <= 0:
            continue
        parsed.append(SLO(percentile=percentile, latency_ms=latency))
    return parsed


def _default_plan_path() -> Path:
    """Best-effort attempt to locate the default plan catalog."""

    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "deploy" / "plan.yaml"
        if candidate.exists():
            return candidate
    # Fall back to sibling lookup so callers can detect missing file cleanly.
    return current.parent / "plan.yaml"


def load_default_plan(path: Path | None = None) -> Dict[str, Any]:
    """Load the default plan from disk, falling back to the built-in defaults."""

    source = path or _default_plan_path()
    if not source.exists():
        return copy.deepcopy(DEFAULT_PLAN)

    raw = yaml.safe_load(source.read_text()) or {}
    plan = copy.deepcopy(DEFAULT_PLAN)
    plan.update({key: value for key, value in raw.items() if key in DEFAULT_PLAN})
    return plan
