"""
Video generation with an ordered model fallback chain.

Each model takes a differently shaped input. Shapes are registered by exact
model identifier in MODEL_PAYLOADS; anything not registered gets the generic
default payload.
"""

import logging
from typing import Callable

from .config import VIDEO_MODEL, BACKUP_VIDEO_MODELS
from .errors import AuthenticationError, GenerationFailedError
from .pipeline.models import GenerationRequest, JobHandle, PredictionJob
from .replicate import PredictionProvider

logger = logging.getLogger(__name__)

GENERATION_ENDPOINT = "replicate/video-generation"

DAMO_MODEL, SVD_BACKUP_MODEL, ZEROSCOPE_XL_MODEL, ZEROSCOPE_576W_MODEL = BACKUP_VIDEO_MODELS

PayloadBuilder = Callable[[GenerationRequest], dict]


# ── Payload builders ─────────────────────────────────────────────────────────

def primary_payload(request: GenerationRequest) -> dict:
    return {"prompt": request.prompt, "num_frames": 24, "fps": 8}


def prompt_only_payload(request: GenerationRequest) -> dict:
    return {"prompt": request.prompt}


def svd_payload(request: GenerationRequest) -> dict:
    return {
        "prompt": request.prompt,
        "video_length": "14_frames_with_svd",
        "sizing_strategy": "maintain_aspect_ratio",
        "frames_per_second": 7,
    }


def default_payload(request: GenerationRequest) -> dict:
    return {
        "prompt": request.prompt,
        "width": 512,
        "height": 512,
        "num_frames": 24,
        "fps": 8,
    }


MODEL_PAYLOADS: dict[str, PayloadBuilder] = {
    VIDEO_MODEL: primary_payload,
    DAMO_MODEL: default_payload,
    SVD_BACKUP_MODEL: svd_payload,
    ZEROSCOPE_XL_MODEL: prompt_only_payload,
    ZEROSCOPE_576W_MODEL: prompt_only_payload,
}


def build_payload(model: str, request: GenerationRequest) -> dict:
    builder = MODEL_PAYLOADS.get(model, default_payload)
    return builder(request)


class FallbackSelector:
    def __init__(self, provider: PredictionProvider):
        self._provider = provider

    async def generate(
        self,
        request: GenerationRequest,
        user_id: int,
        primary: str,
        backups: list[str],
    ) -> JobHandle:
        """
        Start generation on the first model that accepts the job.

        Tries `primary` then each backup in order. Authentication errors stop
        the chain immediately; any other failure moves on to the next model.
        Raises GenerationFailedError listing every failure when all are rejected.
        """
        failures: list[str] = []
        candidates = [("Primary model", primary)] + [
            (f"Backup model {i}", model) for i, model in enumerate(backups, start=1)
        ]

        for label, model in candidates:
            job = PredictionJob(
                model=model,
                input=build_payload(model, request),
                user_id=user_id,
                endpoint=GENERATION_ENDPOINT,
            )
            logger.info(f"Trying {label.lower()}: {model[:60]}")
            try:
                handle = await self._provider.submit(job)
            except AuthenticationError:
                raise
            except Exception as e:
                logger.warning(f"{label} failed: {e}")
                failures.append(f"{label} error: {e}")
                continue
            logger.info(f"{label} accepted the job: {handle.id}")
            return handle

        raise GenerationFailedError(failures)
