"""
LoRA personalisation client (fal.ai Kling endpoints).

  POST {base}/v2/fal/klingtube/train                  → { request_id, lora_id, status }
  GET  {base}/v2/fal/klingtube/check-training?lora_id → { lora_id, status, error }
  POST {base}/v2/fal/klingtube/generate               → { request_id, status }
  GET  {base}/v2/fal/klingtube/check-generation?request_id
                                                      → { request_id, status, video_url, thumbnail_url, error }

Auth: Authorization: Key <FAL_KEY>
"""

import json
import logging
import time
from typing import Optional

import httpx
from pydantic import BaseModel

from .config import Settings
from .cost_tracker import CostTracker
from .errors import AuthenticationError, ConfigurationError, ProviderApiError, ValidationError
from .metrics import ProviderMetrics
from .pipeline.models import UsageStatus

logger = logging.getLogger(__name__)

TRAIN_PATH = "/v2/fal/klingtube/train"
CHECK_TRAINING_PATH = "/v2/fal/klingtube/check-training"
GENERATE_PATH = "/v2/fal/klingtube/generate"
CHECK_GENERATION_PATH = "/v2/fal/klingtube/check-generation"

TRAIN_ENDPOINT = "fal/train"
CHECK_TRAINING_ENDPOINT = "fal/check-training"
GENERATE_ENDPOINT = "fal/generate"
CHECK_GENERATION_ENDPOINT = "fal/check-generation"

LORA_NEGATIVE_PROMPT = "bad quality, blurry, watermark, text, pixelated"
LORA_NUM_FRAMES = 25
LORA_INFERENCE_STEPS = 50


class TrainingStatus(BaseModel):
    request_id: Optional[str] = None
    lora_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class GenerationStatus(BaseModel):
    request_id: Optional[str] = None
    status: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


class LoraTrainer:
    def __init__(
        self,
        settings: Settings,
        ledger: CostTracker,
        metrics: Optional[ProviderMetrics] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not settings.fal_key:
            raise ConfigurationError("FAL_KEY is not set in environment variables")
        self._key = settings.fal_key
        self._base = settings.fal_api_base.rstrip("/")
        self._timeout = settings.provider_timeout_seconds
        self._max_chars = settings.lora_max_video_chars
        self._debug = settings.provider_debug
        self._ledger = ledger
        self._metrics = metrics or ProviderMetrics()
        self._transport = transport

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Key {self._key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        url: str,
        endpoint: str,
        user_id: int,
        body: Optional[str] = None,
        params: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        """One fal.ai call with ledger + metrics bookkeeping."""
        started = time.monotonic()
        request_size = len(body) if body else 0
        response_size = 0
        error: Optional[Exception] = None
        data: dict = {}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(
                    method, url, content=body, params=params, headers=self._get_headers()
                )
            response_size = len(resp.content)
            try:
                parsed = resp.json()
            except ValueError:
                parsed = {}
            data = parsed if isinstance(parsed, dict) else {}

            if resp.status_code in (401, 403):
                error = AuthenticationError(
                    f"Authentication failed with fal.ai API ({resp.status_code}): {resp.text[:300]}",
                    endpoint=url,
                )
            elif resp.is_error:
                error = ProviderApiError(
                    f"fal.ai {endpoint} failed with status {resp.status_code}: {resp.text[:300]}",
                    status=resp.status_code,
                    body=resp.text,
                    endpoint=url,
                )
        except httpx.HTTPError as e:
            error = ProviderApiError(
                f"Network error connecting to fal.ai: {e}", status=0, body=str(e), endpoint=url
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        self._metrics.observe(endpoint, duration_ms, ok=error is None)
        if error is not None:
            self._metrics.record_error(endpoint, type(error).__name__, str(error), user_id)
        await self._ledger.track(
            user_id,
            endpoint,
            data.get("request_id") or request_id,
            request_size,
            response_size,
            UsageStatus.ERROR if error else UsageStatus.SUCCESS,
            str(error) if error else None,
            duration_ms,
        )

        if error is not None:
            logger.error(f"fal.ai {endpoint} failed for user {user_id}: {error}")
            raise error
        if self._debug:
            logger.info(f"fal.ai {endpoint} response: {json.dumps(data)[:500]}")
        return data

    async def train(self, video_data: str, user_id: int) -> TrainingStatus:
        """Submit a selfie video for LoRA training."""
        if len(video_data) > self._max_chars:
            raise ValidationError(
                f"Video is too large for personalisation ({len(video_data)} > {self._max_chars} characters)"
            )
        body = json.dumps({
            "video_input": video_data,
            "user_id": str(user_id),
            "webhook_url": None,
        })
        logger.info(f"Starting LoRA training for user {user_id}, video length: {len(video_data)} chars")
        data = await self._request("POST", f"{self._base}{TRAIN_PATH}", TRAIN_ENDPOINT, user_id, body=body)
        return TrainingStatus(
            request_id=data.get("request_id"),
            lora_id=data.get("lora_id"),
            status=data.get("status"),
            error=data.get("error"),
        )

    async def check_training(self, lora_id: str, user_id: int) -> TrainingStatus:
        data = await self._request(
            "GET",
            f"{self._base}{CHECK_TRAINING_PATH}",
            CHECK_TRAINING_ENDPOINT,
            user_id,
            params={"lora_id": lora_id},
            request_id=lora_id,
        )
        return TrainingStatus(
            request_id=data.get("request_id"),
            lora_id=data.get("lora_id") or lora_id,
            status=data.get("status"),
            error=data.get("error"),
        )

    async def generate(self, lora_id: str, prompt: str, user_id: int) -> GenerationStatus:
        """Start a video from a trained LoRA. Poll with check_generation()."""
        body = json.dumps({
            "lora_id": lora_id,
            "prompt": prompt,
            "negative_prompt": LORA_NEGATIVE_PROMPT,
            "num_frames": LORA_NUM_FRAMES,
            "num_inference_steps": LORA_INFERENCE_STEPS,
            "webhook_url": None,
        })
        logger.info(f"Starting LoRA video generation for user {user_id} with lora_id={lora_id}")
        data = await self._request(
            "POST", f"{self._base}{GENERATE_PATH}", GENERATE_ENDPOINT, user_id, body=body
        )
        return GenerationStatus(
            request_id=data.get("request_id"),
            status=data.get("status"),
            video_url=data.get("video_url"),
            thumbnail_url=data.get("thumbnail_url"),
            error=data.get("error"),
        )

    async def check_generation(self, request_id: str, user_id: int) -> GenerationStatus:
        data = await self._request(
            "GET",
            f"{self._base}{CHECK_GENERATION_PATH}",
            CHECK_GENERATION_ENDPOINT,
            user_id,
            params={"request_id": request_id},
            request_id=request_id,
        )
        return GenerationStatus(
            request_id=data.get("request_id") or request_id,
            status=data.get("status"),
            video_url=data.get("video_url"),
            thumbnail_url=data.get("thumbnail_url"),
            error=data.get("error"),
        )

    def endpoints(self) -> dict:
        """Resolved fal.ai URLs, for the debug surface."""
        return {
            "train": f"{self._base}{TRAIN_PATH}",
            "generate": f"{self._base}{GENERATE_PATH}",
            "check_training": f"{self._base}{CHECK_TRAINING_PATH}?lora_id=test-id",
            "check_generation": f"{self._base}{CHECK_GENERATION_PATH}?request_id=test-id",
        }

    async def test_connection(self) -> dict:
        """Check that the fal.ai host answers. Not recorded in the usage ledger."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(self._base, headers=self._get_headers())
        except httpx.HTTPError as e:
            return {"success": False, "message": f"Failed to connect to fal.ai: {e}", "endpoints": self.endpoints()}
        if resp.status_code in (401, 403):
            return {
                "success": False,
                "message": f"fal.ai rejected FAL_KEY ({resp.status_code})",
                "endpoints": self.endpoints(),
            }
        return {"success": True, "message": "fal.ai is reachable", "endpoints": self.endpoints()}
