"""
Face stage helpers: extract a face from a selfie video, start a face swap.
"""

import asyncio
import logging

from .config import Settings
from .errors import ProviderJobFailed
from .pipeline.models import JobHandle, PredictionJob, PredictionState
from .replicate import PredictionProvider

logger = logging.getLogger(__name__)

FACE_EXTRACTION_ENDPOINT = "replicate/face-extraction"
FACE_SWAP_ENDPOINT = "replicate/face-swap"


class FaceStudio:
    def __init__(self, provider: PredictionProvider, settings: Settings):
        self._provider = provider
        self._settings = settings

    async def extract(self, video_data: str, user_id: int) -> str:
        """
        Run face extraction and wait for the face image URL.

        Polls at most `extraction_poll_attempts` times. If the job is still
        running after that the configured placeholder face is returned.
        Submit errors propagate; an upstream failure raises ProviderJobFailed.
        """
        job = PredictionJob(
            model=self._settings.face_extract_model,
            input={"image": video_data, "detection_size": 640},
            user_id=user_id,
            endpoint=FACE_EXTRACTION_ENDPOINT,
        )
        handle = await self._provider.submit(job)
        logger.info(f"Face extraction started for user {user_id}: {handle.id}")

        attempts = self._settings.extraction_poll_attempts
        interval = self._settings.extraction_poll_interval_seconds
        for attempt in range(1, attempts + 1):
            prediction = await self._provider.poll(handle.id, user_id)

            if prediction.status == PredictionState.SUCCEEDED:
                if prediction.output:
                    logger.info(f"Face extracted for user {user_id} after {attempt} poll(s)")
                    return prediction.output
                raise ProviderJobFailed("Face extraction returned no image", request_id=handle.id)

            if prediction.status == PredictionState.FAILED:
                raise ProviderJobFailed(
                    f"Face extraction failed: {prediction.error or 'Unknown error'}",
                    request_id=handle.id,
                )

            if attempt < attempts:
                await asyncio.sleep(interval)

        logger.warning(
            f"Face extraction {handle.id} still running after {attempts} polls, "
            f"using placeholder face"
        )
        return self._settings.placeholder_face_url

    async def start_swap(self, video_url: str, face_url: str, user_id: int) -> JobHandle:
        """Composite `face_url` onto `video_url`. Returns the swap job handle."""
        job = PredictionJob(
            model=self._settings.face_swap_model,
            input={
                "target_image": video_url,
                "source_image": face_url,
                "face_index": 0,
                "keep_fps": True,
            },
            user_id=user_id,
            endpoint=FACE_SWAP_ENDPOINT,
        )
        handle = await self._provider.submit(job)
        logger.info(f"Face swap started for user {user_id}: {handle.id}")
        return handle
