"""Telemetry client reading wall-time percentiles from the observability API."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

import requests
import structlog

from rollout.errors import ExternalServiceError
from rollout.hosting.base import TelemetryClient
from rollout.reliability import LatencyMetrics

logger = structlog.get_logger(__name__)

# query alias -> percentile operator (also the LatencyMetrics field)
CALCULATIONS = {
    "P999 Wall": "p999",
    "P99 Wall": "p99",
    "P90 Wall": "p90",
    "P50 Wall": "median",
}


class HttpTelemetryClient(TelemetryClient):
    """Query percentile calculations over the ``wallTimeMs`` field."""

    def __init__(
        self,
        api_base: str,
        account_id: str,
        api_token: str,
        *,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.account_id = account_id
        self.api_token = api_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/workers/observability/telemetry/query"

    def build_query(self, service: str, from_ms: int, to_ms: int) -> Dict[str, Any]:
        return {
            "view": "calculations",
            "limit": 10,
            "dry": False,
            "queryId": "workers-logs",
            "parameters": {
                "datasets": ["cloudflare-workers"],
                "filters": [
                    {
                        "key": "$workers.scriptName",
                        "operation": "eq",
                        "value": service,
                        "type": "string",
                        "id": str(uuid.uuid4()),
                    }
                ],
                "calculations": [
                    {
                        "key": "$workers.wallTimeMs",
                        "keyType": "number",
                        "operator": operator,
                        "alias": alias,
                        "id": str(uuid.uuid4()),
                    }
                    for alias, operator in CALCULATIONS.items()
                ],
                "groupBys": [],
                "havings": [],
            },
            "timeframe": {"from": from_ms, "to": to_ms},
        }

    def query_percentiles(self, service: str, from_ms: int, to_ms: int) -> LatencyMetrics:
        try:
            response = self.session.post(
                self._url(),
                json=self.build_query(service, from_ms, to_ms),
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("telemetry.query.failed", service=service, error=str(exc))
            raise ExternalServiceError(f"Observability API request failed: {exc}") from exc

        values = {field: 0.0 for field in CALCULATIONS.values()}
        for calculation in (body.get("result") or {}).get("calculations") or []:
            field = CALCULATIONS.get(calculation.get("alias"))
            aggregates = calculation.get("aggregates") or []
            if field and aggregates:
                values[field] = float(aggregates[0].get("value", 0.0))
        return LatencyMetrics(**values)
