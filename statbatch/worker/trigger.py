from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from statbatch.batches.errors import TriggerRejectedError
from statbatch.batches.types import TriggerAccepted
from statbatch.core.config import Settings

logger = logging.getLogger(__name__)


class WorkerTrigger(Protocol):
    def start_computation(
        self, batch_id: str, function_name: str, scope_summary: dict[str, Any]
    ) -> TriggerAccepted: ...


class HttpWorkerTrigger:
    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None):
        self._settings = settings
        self._client = httpx.Client(
            transport=transport,
            timeout=settings.worker_timeout_seconds,
            headers=self._headers(),
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._settings.worker_access_token:
            headers["Authorization"] = f"Bearer {self._settings.worker_access_token}"
        return headers

    def close(self) -> None:
        self._client.close()

    def start_computation(
        self, batch_id: str, function_name: str, scope_summary: dict[str, Any]
    ) -> TriggerAccepted:
        base_url = self._settings.worker_base_url
        if not base_url:
            raise TriggerRejectedError("Worker endpoint is not configured", transient=False)

        url = f"{base_url}/{function_name}"
        try:
            response = self._client.post(url, json={"job": scope_summary})
        except httpx.TimeoutException as exc:
            raise TriggerRejectedError(f"Worker did not answer within the timeout: {exc}", transient=True) from exc
        except httpx.RequestError as exc:
            raise TriggerRejectedError(f"Worker is unreachable: {exc}", transient=True) from exc

        if response.status_code >= 500:
            raise TriggerRejectedError(
                f"Worker failed with HTTP {response.status_code}",
                transient=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TriggerRejectedError(
                f"Worker rejected the job with HTTP {response.status_code}: {self._error_detail(response)}",
                transient=False,
                status_code=response.status_code,
            )

        body = self._json_body(response)
        if body.get("success") is False:
            raise TriggerRejectedError(
                f"Worker refused the job: {self._error_detail(response)}",
                transient=False,
                status_code=response.status_code,
            )

        reference = body.get("job_id") or body.get("reference")
        return TriggerAccepted(
            batch_id=batch_id,
            function_name=function_name,
            accepted_at=datetime.now(tz=timezone.utc),
            worker_reference=None if reference is None else str(reference),
        )

    def _json_body(self, response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            logger.warning("worker answered with a non-JSON body", extra={"status_code": response.status_code})
            return {}
        return body if isinstance(body, dict) else {}

    def _error_detail(self, response: httpx.Response) -> str:
        body = self._json_body(response)
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if value:
                return str(value)
        return response.text[:200] or "no detail"
