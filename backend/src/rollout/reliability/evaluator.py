"""SLO evaluation used to gate each soak round."""

from __future__ import annotations

from typing import Iterable, List

from rollout.reliability.slo import LatencyMetrics, SLOEvaluationResult, SLOViolation
from rollout.schemas import SLO


def evaluate_slos(slos: Iterable[SLO], metrics: LatencyMetrics) -> SLOEvaluationResult:
    """Compare observed latency percentiles against their ceilings."""

    configs = list(slos)
    violations: List[SLOViolation] = []

    for slo in configs:
        actual = metrics.value_for(slo.percentile)
        if actual > slo.latency_ms:
            violations.append(
                SLOViolation(
                    percentile=slo.percentile.value,
                    expected_max_ms=slo.latency_ms,
                    actual_ms=actual,
                    violation_margin_ms=actual - slo.latency_ms,
                )
            )

    passed = not violations
    if passed:
        summary = f"All {len(configs)} SLO(s) passed"
    else:
        details = ", ".join(
            f"{v.describe()} (+{v.violation_margin_ms:g}ms)" for v in violations
        )
        summary = f"{len(violations)} of {len(configs)} SLO(s) violated: {details}"

    return SLOEvaluationResult(passed=passed, violations=violations, summary=summary)


def describe_violations(result: SLOEvaluationResult) -> str:
    return ", ".join(violation.describe() for violation in result.violations)
