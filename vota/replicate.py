"""
Replicate predictions API client.

Queue-style protocol shared by every model we run:
  POST /predictions                 → { id, status, ... }
  GET  /predictions/{id}            → { id, status, output, error }

Every submit and poll appends exactly one record to the usage ledger,
whether the call succeeded or not.
"""

import json
import logging
import time
from typing import Any, Optional, Protocol

import httpx

from .config import Settings
from .cost_tracker import CostTracker
from .errors import AuthenticationError, ConfigurationError, ProviderApiError
from .metrics import ProviderMetrics
from .pipeline.models import JobHandle, PredictionJob, Prediction, PredictionState, UsageStatus

logger = logging.getLogger(__name__)

STATUS_CHECK_ENDPOINT = "replicate/status-check"

# Replicate lifecycle → our three-state view
_STATE_MAP = {
    "starting": PredictionState.PENDING,
    "processing": PredictionState.PENDING,
    "succeeded": PredictionState.SUCCEEDED,
    "failed": PredictionState.FAILED,
    "canceled": PredictionState.FAILED,
}


class PredictionProvider(Protocol):
    """Anything that can run a prediction job and report on it."""

    async def submit(self, job: PredictionJob) -> JobHandle: ...

    async def poll(self, request_id: str, user_id: int) -> Prediction: ...


def first_output(output: Any) -> Optional[str]:
    """Multi-candidate outputs collapse to their first element."""
    if isinstance(output, list):
        return first_output(output[0]) if output else None
    if output is None or output == "":
        return None
    return str(output)


def _parse_body(text: str) -> dict:
    try:
        data = json.loads(text) if text else {}
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


class ReplicateClient:
    def __init__(
        self,
        settings: Settings,
        ledger: CostTracker,
        metrics: Optional[ProviderMetrics] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.replicate_api_token:
            raise ConfigurationError("REPLICATE_API_TOKEN is not set in environment variables")
        self._token = settings.replicate_api_token
        self._base = settings.replicate_api_base.rstrip("/")
        self._timeout = settings.provider_timeout_seconds
        self._debug = settings.provider_debug
        self._ledger = ledger
        self._metrics = metrics or ProviderMetrics()
        self._transport = transport

    @property
    def predictions_url(self) -> str:
        return f"{self._base}/predictions"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Token {self._token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _record(
        self,
        job_user: int,
        endpoint: str,
        request_id: Optional[str],
        request_size: int,
        response_size: int,
        started: float,
        error: Optional[Exception] = None,
    ):
        duration_ms = int((time.monotonic() - started) * 1000)
        message = str(error) if error else None
        self._metrics.observe(endpoint, duration_ms, ok=error is None)
        if error:
            self._metrics.record_error(endpoint, type(error).__name__, message, job_user)
        await self._ledger.track(
            job_user,
            endpoint,
            request_id,
            request_size,
            response_size,
            UsageStatus.ERROR if error else UsageStatus.SUCCESS,
            message,
            duration_ms,
        )

    @staticmethod
    def _classify(status: int, body: str, data: dict, url: str, action: str) -> Exception:
        detail = data.get("error") or data.get("detail") or body or "Unknown error"
        if status in (401, 403):
            return AuthenticationError(
                f"Authentication failed with Replicate API ({status}): {detail}", endpoint=url
            )
        return ProviderApiError(
            f"Replicate {action} failed with status {status}: {detail}",
            status=status,
            body=body,
            endpoint=url,
        )

    # ── Submit ───────────────────────────────────────────────────────────

    async def submit(self, job: PredictionJob) -> JobHandle:
        """Start a prediction. Raises AuthenticationError / ProviderApiError."""
        url = self.predictions_url
        body = json.dumps({"version": job.model, "input": job.input})
        started = time.monotonic()

        if self._debug:
            logger.info(f"Replicate submit {job.endpoint} model={job.model} payload={body[:500]}")

        try:
            async with self._client() as client:
                resp = await client.post(url, content=body, headers=self._headers())
        except httpx.HTTPError as e:
            error = ProviderApiError(
                f"Network error connecting to Replicate: {e}", status=0, body=str(e), endpoint=url
            )
            await self._record(job.user_id, job.endpoint, None, len(body), 0, started, error)
            raise error from e

        text = resp.text
        data = _parse_body(text)

        if resp.is_error or data.get("error") or not data.get("id"):
            error = self._classify(resp.status_code, text, data, url, "submit")
            await self._record(
                job.user_id, job.endpoint, data.get("id"), len(body), len(text), started, error
            )
            logger.error(f"Replicate submit {job.endpoint} failed: {error}")
            raise error

        await self._record(job.user_id, job.endpoint, data["id"], len(body), len(text), started)
        logger.info(f"Replicate {job.endpoint} queued: id={data['id']} model={job.model[:60]}")
        return JobHandle(id=data["id"], model=job.model, status=data.get("status", "starting"))

    # ── Poll ─────────────────────────────────────────────────────────────

    async def poll(self, request_id: str, user_id: int) -> Prediction:
        """Fetch the current state of a prediction."""
        url = f"{self.predictions_url}/{request_id}"
        started = time.monotonic()

        try:
            async with self._client() as client:
                resp = await client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            error = ProviderApiError(
                f"Network error connecting to Replicate: {e}", status=0, body=str(e), endpoint=url
            )
            await self._record(user_id, STATUS_CHECK_ENDPOINT, request_id, 0, 0, started, error)
            raise error from e

        text = resp.text
        data = _parse_body(text)

        if resp.is_error:
            error = self._classify(resp.status_code, text, data, url, "status check")
            await self._record(user_id, STATUS_CHECK_ENDPOINT, request_id, 0, len(text), started, error)
            raise error

        await self._record(user_id, STATUS_CHECK_ENDPOINT, request_id, 0, len(text), started)

        if self._debug:
            logger.info(f"Replicate status {request_id}: {text[:500]}")

        raw_status = str(data.get("status", "starting")).lower()
        state = _STATE_MAP.get(raw_status, PredictionState.PENDING)
        error = data.get("error")
        if state == PredictionState.FAILED and not error:
            error = f"Prediction {raw_status}"
        return Prediction(
            id=data.get("id", request_id),
            status=state,
            output=first_output(data.get("output")),
            error=str(error) if error else None,
        )

    # ── Diagnostics ──────────────────────────────────────────────────────

    async def test_connection(self) -> dict:
        """Check that the API is reachable with our token."""
        try:
            async with self._client() as client:
                resp = await client.get(self._base, headers=self._headers())
        except httpx.HTTPError as e:
            return {"success": False, "message": f"Failed to connect to Replicate API: {e}"}
        if resp.is_success:
            return {"success": True, "message": "Successfully connected to Replicate API"}
        return {
            "success": False,
            "message": f"Failed to connect to Replicate API: {resp.status_code} {resp.text[:200]}",
        }
