"""Deployment controller backed by the hosting platform's deployments API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests
import structlog

from rollout.errors import ExternalServiceError
from rollout.hosting.base import DeploymentController
from rollout.observability.metrics import record_deployment_call

logger = structlog.get_logger(__name__)


class HttpDeploymentController(DeploymentController):
    """Create percentage-strategy deployments over HTTP."""

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

    def _url(self, service: str) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/workers/scripts/{service}/deployments"

    def _deploy(self, action: str, service: str, versions: List[Dict[str, Any]], message: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"strategy": "percentage", "versions": versions}
        if message:
            payload["annotations"] = {"workers/message": message}

        logger.info("deployment.request", action=action, service=service, versions=versions)
        try:
            response = self.session.post(
                self._url(service),
                json=payload,
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            record_deployment_call(action=action, status="error")
            raise ExternalServiceError(f"Deployment {action} for '{service}' failed: {exc}") from exc

        record_deployment_call(action=action, status="ok")
        try:
            return response.json()
        except ValueError:
            return {}

    def set_split(
        self,
        service: str,
        old_version_id: str,
        new_version_id: str,
        new_percent: int,
        message: Optional[str] = None,
    ) -> None:
        self._deploy(
            "split",
            service,
            [
                {"percentage": new_percent, "version_id": new_version_id},
                {"percentage": 100 - new_percent, "version_id": old_version_id},
            ],
            message,
        )

    def finish(self, service: str, new_version_id: str, message: Optional[str] = None) -> None:
        self._deploy("finish", service, [{"percentage": 100, "version_id": new_version_id}], message)

    def revert(self, service: str, old_version_id: str, message: Optional[str] = None) -> None:
        self._deploy("revert", service, [{"percentage": 100, "version_id": old_version_id}], message)

