"""
Simulated prediction provider for development mode (SIMULATE_PROVIDERS=true).

Same submit/poll contract as the Replicate client, but every job completes on
its first poll with a sample asset, so the whole pipeline can run without
credentials. Nothing is written to the usage ledger since no external call
is made.
"""

import itertools
import logging

from .config import Settings
from .pipeline.models import JobHandle, PredictionJob, Prediction, PredictionState

logger = logging.getLogger(__name__)

SAMPLE_VIDEO_URL = "https://replicate.delivery/pbxt/sample/generated-video.mp4"
SAMPLE_SWAP_URL = "https://replicate.delivery/pbxt/sample/face-swapped-video.mp4"


class SimulatedProvider:
    def __init__(self, settings: Settings):
        self._settings = settings
        self._ids = itertools.count(1)
        self._jobs: dict[str, PredictionJob] = {}

    def _sample_output(self, job: PredictionJob) -> str:
        if job.model == self._settings.face_extract_model:
            return self._settings.placeholder_face_url
        if job.model == self._settings.face_swap_model:
            return SAMPLE_SWAP_URL
        return SAMPLE_VIDEO_URL

    async def submit(self, job: PredictionJob) -> JobHandle:
        request_id = f"dev-{next(self._ids)}"
        self._jobs[request_id] = job
        logger.info(f"Simulated {job.endpoint}: id={request_id} model={job.model[:60]}")
        return JobHandle(id=request_id, model=job.model, status="starting")

    async def poll(self, request_id: str, user_id: int) -> Prediction:
        job = self._jobs.get(request_id)
        if job is None:
            return Prediction(
                id=request_id, status=PredictionState.FAILED, error=f"Unknown prediction {request_id}"
            )
        return Prediction(id=request_id, status=PredictionState.SUCCEEDED, output=self._sample_output(job))

    async def test_connection(self) -> dict:
        return {"success": True, "message": "Simulated provider (SIMULATE_PROVIDERS=true)"}
