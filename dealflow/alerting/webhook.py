from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AlertPayload:
    subject_id: str
    job_id: str
    error: str
    step: str
    timestamp: str
    stack_trace: str | None = None


class AlertClient(Protocol):
    def send_alert(self, payload: AlertPayload) -> None: ...


class WebhookAlertClient:
    """Posts pipeline failure alerts as JSON to an operator webhook."""

    def __init__(
        self,
        *,
        webhook_url: str | None,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("Alert webhook URL must be configured")
        self._webhook_url = webhook_url
        self._token = token
        self._http_client = http_client or httpx.Client(timeout=timeout_seconds)

    def send_alert(self, payload: AlertPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        response = self._http_client.post(
            self._webhook_url,
            json={"type": "pipeline_failure", **asdict(payload)},
            headers=headers,
        )
        response.raise_for_status()
        logger.info("Failure alert delivered for subject %s", payload.subject_id)

    def close(self) -> None:
        self._http_client.close()
