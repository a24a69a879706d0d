"""
PipelineOrchestrator — drives uploads and videos through their state machines.

  Upload: pending → processing → completed | failed
          (face extraction runs as a background task)

  Video:  processing → completed | failed
          generation phase:  request_id = generation job
          swap phase:        raw_video_url set, request_id = face swap job

A swap phase with no recorded swap job that no poll in this process is
still starting is completed with the generated video instead.

Video state advances only when a client polls check_video(). Every transition
is a conditional update on the record's version, so two pollers racing on
the same video cannot both start a face swap.
"""

import logging
from typing import Any, Optional

from ..config import Settings
from ..cost_tracker import CostTracker
from ..errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientCheckError,
    ValidationError,
)
from ..faces import FaceStudio
from ..fallback import FallbackSelector
from ..lora import GenerationStatus, LoraTrainer, TrainingStatus
from ..notifications import EmailNotifier, NotificationEvent
from ..replicate import PredictionProvider
from .models import (
    GenerationRequest,
    PredictionState,
    TERMINAL_UPLOAD_STATUSES,
    TERMINAL_VIDEO_STATUSES,
    Upload,
    UploadOutcome,
    UploadStatus,
    User,
    UserProcessingStatus,
    Video,
    VideoCreate,
    VideoCreateRequest,
    VideoOutcome,
    VideoStatus,
    utcnow,
)
from .store import JobStore
from .tasks import TaskRunner

logger = logging.getLogger(__name__)

PROCESSING_MESSAGE = "Your video is being processed. This may take a few moments."
UPLOAD_FAILED_FALLBACK = "Processing failed, but we're working on making it better!"

GENERIC_UPLOAD_ERROR = (
    "We couldn't process your video. Please try recording in better lighting or try a different pose."
)
TEMPORARY_UPLOAD_ERROR = (
    "We're experiencing temporary issues with our video processing. Please try again later."
)
FACE_VISIBILITY_ERROR = (
    "Your video couldn't be analyzed properly. Try recording with your face clearly visible, "
    "in good lighting."
)

RECENT_USAGE_LIMIT = 10
HANDLE_WRITE_ATTEMPTS = 2


def friendly_upload_error(technical: str) -> str:
    """Map a raw extraction error to the message shown to the user."""
    if "Unknown error" in technical:
        return TEMPORARY_UPLOAD_ERROR
    lowered = technical.lower()
    if "422" in lowered or "unprocessable" in lowered:
        return FACE_VISIBILITY_ERROR
    return GENERIC_UPLOAD_ERROR


class PipelineOrchestrator:
    """
    Usage:
        orchestrator = PipelineOrchestrator(store, provider, faces, fallback,
                                            notifier, settings, tasks, ledger)

        upload = await orchestrator.start_upload(user_id, video_data, {})
        outcome = await orchestrator.upload_status(upload.id)

        video = await orchestrator.create_video(request)
        outcome = await orchestrator.check_video(video.id)   # poll until terminal
    """

    def __init__(
        self,
        store: JobStore,
        provider: PredictionProvider,
        faces: FaceStudio,
        fallback: FallbackSelector,
        notifier: EmailNotifier,
        settings: Settings,
        tasks: TaskRunner,
        ledger: CostTracker,
        lora: Optional[LoraTrainer] = None,
    ):
        self.store = store
        self.provider = provider
        self.faces = faces
        self.fallback = fallback
        self.notifier = notifier
        self.settings = settings
        self.tasks = tasks
        self.ledger = ledger
        self.lora = lora
        # Videos whose swap job this process is submitting right now
        self._starting_swaps: set[int] = set()

    async def _require_user(self, user_id: int) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    # ── Users ────────────────────────────────────────────────────────────

    async def create_user(self, username: str, email: Optional[str] = None) -> User:
        if await self.store.get_user_by_username(username):
            raise ValidationError(f"Username '{username}' already exists")
        user = await self.store.create_user(username, email)
        logger.info(f"Created user {user.id} ({username})")
        return user

    async def get_user(self, user_id: int) -> User:
        return await self._require_user(user_id)

    async def list_uploads(self, user_id: int) -> list[Upload]:
        await self._require_user(user_id)
        return await self.store.list_uploads(user_id)

    async def list_videos(self, user_id: int) -> list[Video]:
        await self._require_user(user_id)
        return await self.store.list_videos(user_id)

    async def usage_report(self, user_id: int) -> dict:
        """Cost summary plus the most recent ledger records for one user."""
        await self._require_user(user_id)
        summary = await self.ledger.user_costs(user_id)
        records = await self.store.list_usage(user_id)
        return {
            "user_id": user_id,
            "total_cost": summary.total_cost,
            "usage_count": summary.usage_count,
            "recent_usage": [r.model_dump(mode="json") for r in records[:RECENT_USAGE_LIMIT]],
        }

    async def total_cost(self) -> float:
        return await self.ledger.total_costs()

    # ── Uploads ──────────────────────────────────────────────────────────

    async def start_upload(self, user_id: int, video_data: str, metadata: dict[str, Any]) -> Upload:
        """
        Record the upload and kick off face extraction in the background.

        Returns as soon as the upload is in `processing`; the video payload is
        handed to the extraction task and never stored.
        """
        await self._require_user(user_id)

        meta = {
            **metadata,
            "original_size": len(video_data),
            "upload_date": utcnow().isoformat(),
            "device_info": metadata.get("device_info", "unknown"),
        }
        upload = await self.store.create_upload(user_id, meta)
        upload = await self.store.update_upload(
            upload.id, {"processing_status": UploadStatus.PROCESSING}, expected_version=upload.version
        )
        await self.store.update_user(user_id, {"processing_status": UserProcessingStatus.PROCESSING})
        logger.info(f"[upload {upload.id}] processing → face extraction ({len(video_data)} chars)")

        upload_id, version = upload.id, upload.version

        async def extract():
            await self._extract_face(upload_id, version, user_id, video_data)

        async def on_failure(error: BaseException):
            await self._fail_upload(upload_id, user_id, error)

        self.tasks.spawn(f"upload {upload_id}", extract, on_failure)
        return upload

    async def _extract_face(self, upload_id: int, version: int, user_id: int, video_data: str):
        face_url = await self.faces.extract(video_data, user_id)

        # User first: a completed upload must imply a user who can create videos
        user = await self.store.update_user(
            user_id,
            {"face_image_url": face_url, "processing_status": UserProcessingStatus.COMPLETED},
        )
        upload = await self.store.update_upload(
            upload_id,
            {"face_image_url": face_url, "processing_status": UploadStatus.COMPLETED},
            expected_version=version,
        )
        logger.info(f"[upload {upload_id}] completed: {face_url}")

        await self.notifier.notify(NotificationEvent.EXTRACTION_COMPLETE, user, upload)

    async def _fail_upload(self, upload_id: int, user_id: int, error: BaseException):
        current = await self.store.get_upload(upload_id)
        if current is None or current.processing_status in TERMINAL_UPLOAD_STATUSES:
            logger.warning(f"[upload {upload_id}] not marking failed, already terminal: {error}")
            return

        technical = str(error) or type(error).__name__
        metadata = {
            **current.metadata,
            "technical_error": technical,
            "error_timestamp": utcnow().isoformat(),
        }
        try:
            await self.store.update_upload(
                upload_id,
                {
                    "processing_status": UploadStatus.FAILED,
                    "error_message": friendly_upload_error(technical),
                    "metadata": metadata,
                },
                expected_version=current.version,
            )
        except ConflictError:
            logger.warning(f"[upload {upload_id}] changed while recording failure, leaving as is")
            return
        await self.store.update_user(user_id, {"processing_status": UserProcessingStatus.FAILED})
        logger.error(f"[upload {upload_id}] failed: {technical}")

    async def upload_status(self, upload_id: int) -> UploadOutcome:
        upload = await self.store.get_upload(upload_id)
        if upload is None:
            raise NotFoundError(f"Upload {upload_id} not found")

        if upload.processing_status == UploadStatus.FAILED:
            return UploadOutcome(upload=upload, message=upload.error_message or UPLOAD_FAILED_FALLBACK)
        if upload.processing_status in (UploadStatus.PENDING, UploadStatus.PROCESSING):
            return UploadOutcome(upload=upload, message=PROCESSING_MESSAGE)
        return UploadOutcome(upload=upload)

    # ── Videos ───────────────────────────────────────────────────────────

    async def create_video(self, request: VideoCreateRequest) -> Video:
        """
        Create the video record and start generation through the fallback chain.

        Raises NotFoundError / ValidationError before any external call. If no
        model accepts the job the video is marked failed and the error propagates.
        """
        user = await self._require_user(request.user_id)
        if not user.face_image_url:
            raise ValidationError("Please upload a selfie video first to extract your face")

        video = await self.store.create_video(VideoCreate(
            user_id=user.id,
            title=request.title,
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            aspect_ratio=request.aspect_ratio,
            duration=request.duration,
            cfg_scale=request.cfg_scale,
            notification_email=request.email,
        ))

        generation = GenerationRequest(
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            aspect_ratio=request.aspect_ratio,
            duration=request.duration,
            cfg_scale=request.cfg_scale,
        )
        try:
            handle = await self.fallback.generate(
                generation, user.id, self.settings.video_model, self.settings.backup_video_models
            )
        except Exception as e:
            logger.error(f"[video {video.id}] generation could not be started: {e}")
            await self.store.update_video(
                video.id, {"status": VideoStatus.FAILED, "error_message": str(e)}
            )
            raise

        video = await self.store.update_video(
            video.id, {"request_id": handle.id}, expected_version=video.version
        )
        logger.info(f"[video {video.id}] generation started: {handle.id}")
        return video

    async def check_video(self, video_id: int) -> VideoOutcome:
        """
        Poll the outstanding job for a video and advance its state.

        Never raises for a known id: provider or store trouble comes back as an
        `error` annotation on the unchanged record.
        """
        video = await self.store.get_video(video_id)
        if video is None:
            raise NotFoundError(f"Video {video_id} not found")

        if video.status in TERMINAL_VIDEO_STATUSES:
            return VideoOutcome(video=video)

        try:
            return await self._advance(video)
        except ConflictError:
            logger.info(f"[video {video_id}] advanced by a concurrent poll, returning fresh record")
            fresh = await self.store.get_video(video_id)
            return VideoOutcome(video=fresh or video)
        except TransientCheckError as e:
            logger.warning(f"[video {video_id}] {e}")
            return VideoOutcome(video=video, error=f"Error checking status: {e}")
        except Exception as e:
            logger.error(f"[video {video_id}] status check failed: {e}", exc_info=True)
            return VideoOutcome(video=video, error=f"Error checking status: {e}")

    async def _advance(self, video: Video) -> VideoOutcome:
        if not video.request_id:
            if video.in_swap_phase:
                return await self._recover_swap_start(video)
            return VideoOutcome(video=video, message="Waiting for generation to start")

        try:
            prediction = await self.provider.poll(video.request_id, video.user_id)
        except Exception as e:
            raise TransientCheckError(f"Could not check job {video.request_id}: {e}") from e

        if video.in_swap_phase:
            return await self._advance_swap(video, prediction.status, prediction.output, prediction.error)
        return await self._advance_generation(video, prediction.status, prediction.output, prediction.error)

    async def _advance_generation(
        self, video: Video, state: PredictionState, output: Optional[str], error: Optional[str]
    ) -> VideoOutcome:
        if state == PredictionState.PENDING:
            return VideoOutcome(video=video, message="Video generation in progress", progress=0.3)

        if state == PredictionState.FAILED or not output:
            reason = error or "Video generation finished without a video"
            failed = await self.store.update_video(
                video.id,
                {"status": VideoStatus.FAILED, "error_message": reason},
                expected_version=video.version,
            )
            logger.error(f"[video {video.id}] generation failed: {reason}")
            return VideoOutcome(video=failed, message="Video generation failed")

        user = await self.store.get_user(video.user_id)
        if user is None or not user.face_image_url:
            completed = await self.store.update_video(
                video.id,
                {"status": VideoStatus.COMPLETED, "video_url": output, "thumbnail_url": output},
                expected_version=video.version,
            )
            logger.info(f"[video {video.id}] completed without face swap")
            await self._notify_video(completed)
            return VideoOutcome(video=completed, message="Video generation complete")

        # Claim the swap phase before submitting so a concurrent poll sees it
        claimed = await self.store.update_video(
            video.id, {"raw_video_url": output, "request_id": None}, expected_version=video.version
        )
        self._starting_swaps.add(video.id)
        try:
            return await self._start_swap(claimed, output, user)
        finally:
            self._starting_swaps.discard(video.id)

    async def _start_swap(self, claimed: Video, output: str, user: User) -> VideoOutcome:
        try:
            handle = await self.faces.start_swap(output, user.face_image_url, user.id)
        except Exception as e:
            logger.error(f"[video {claimed.id}] face swap could not be started: {e}")
            return await self._complete_without_swap(
                claimed, f"Face swap could not be started, showing original video: {e}"
            )

        last_error: Optional[Exception] = None
        for attempt in range(1, HANDLE_WRITE_ATTEMPTS + 1):
            try:
                swapping = await self.store.update_video(
                    claimed.id, {"request_id": handle.id}, expected_version=claimed.version
                )
            except ConflictError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"[video {claimed.id}] saving face swap {handle.id} failed "
                    f"(attempt {attempt}/{HANDLE_WRITE_ATTEMPTS}): {e}"
                )
                continue
            logger.info(f"[video {claimed.id}] generation done → face swap {handle.id}")
            return VideoOutcome(video=swapping, message="Face swap in progress", progress=0.5)

        return await self._complete_without_swap(
            claimed, f"Face swap could not be tracked, showing original video: {last_error}"
        )

    async def _recover_swap_start(self, video: Video) -> VideoOutcome:
        """Swap phase claimed but no swap job recorded."""
        if video.id in self._starting_swaps:
            return VideoOutcome(video=video, message="Face swap starting", progress=0.5)
        logger.warning(f"[video {video.id}] face swap never recorded, delivering original")
        return await self._complete_without_swap(
            video, "Face swap could not be started, showing original video"
        )

    async def _complete_without_swap(self, video: Video, reason: str) -> VideoOutcome:
        completed = await self.store.update_video(
            video.id,
            {
                "status": VideoStatus.COMPLETED,
                "video_url": video.raw_video_url,
                "thumbnail_url": video.thumbnail_url or video.raw_video_url,
                "error_message": reason,
            },
            expected_version=video.version,
        )
        await self._notify_video(completed)
        return VideoOutcome(video=completed, message="Face swap failed, showing original video")

    async def _advance_swap(
        self, video: Video, state: PredictionState, output: Optional[str], error: Optional[str]
    ) -> VideoOutcome:
        if state == PredictionState.PENDING:
            return VideoOutcome(video=video, message="Face swap in progress", progress=0.7)

        thumbnail = video.thumbnail_url or video.raw_video_url

        if state == PredictionState.SUCCEEDED and output:
            completed = await self.store.update_video(
                video.id,
                {"status": VideoStatus.COMPLETED, "video_url": output, "thumbnail_url": thumbnail},
                expected_version=video.version,
            )
            logger.info(f"[video {video.id}] completed: {output}")
            await self._notify_video(completed)
            return VideoOutcome(video=completed, message="Video processing complete")

        # Swap failed: the generated video is still worth delivering
        reason = error or "Face swap returned no video"
        completed = await self.store.update_video(
            video.id,
            {
                "status": VideoStatus.COMPLETED,
                "video_url": video.raw_video_url,
                "thumbnail_url": thumbnail,
                "error_message": f"Face swap failed, showing original video: {reason}",
            },
            expected_version=video.version,
        )
        logger.warning(f"[video {video.id}] face swap failed, delivering original: {reason}")
        await self._notify_video(completed)
        return VideoOutcome(video=completed, message="Face swap failed, showing original video")

    async def _notify_video(self, video: Video):
        try:
            user = await self.store.get_user(video.user_id)
            if user is not None:
                await self.notifier.notify(NotificationEvent.GENERATION_COMPLETE, user, video)
        except Exception as e:
            logger.warning(f"[video {video.id}] completion email not sent: {e}")

    # ── LoRA personalisation ─────────────────────────────────────────────

    def _require_lora(self) -> LoraTrainer:
        if self.lora is None:
            raise ConfigurationError("LoRA personalisation is not configured (FAL_KEY missing)")
        return self.lora

    async def start_lora_training(self, user_id: int, video_data: str) -> TrainingStatus:
        lora = self._require_lora()
        await self._require_user(user_id)

        result = await lora.train(video_data, user_id)
        await self.store.update_user(
            user_id,
            {"lora_id": result.lora_id, "training_status": result.status or "training"},
        )
        logger.info(f"LoRA training started for user {user_id}: lora_id={result.lora_id}")
        return result

    async def check_lora_training(self, user_id: int) -> TrainingStatus:
        lora = self._require_lora()
        user = await self._require_user(user_id)
        if not user.lora_id:
            raise ValidationError("No LoRA training has been started for this user")

        result = await lora.check_training(user.lora_id, user_id)
        if result.status and result.status != user.training_status:
            await self.store.update_user(user_id, {"training_status": result.status})
        return result

    async def generate_lora_video(self, user_id: int, prompt: str) -> GenerationStatus:
        """Start a personalised video from the user's trained LoRA."""
        lora = self._require_lora()
        user = await self._require_user(user_id)
        if not user.lora_id:
            raise ValidationError("Train a personalised model before generating with it")

        result = await lora.generate(user.lora_id, prompt, user_id)
        logger.info(f"LoRA generation started for user {user_id}: request_id={result.request_id}")
        return result

    async def check_lora_generation(self, user_id: int, request_id: str) -> GenerationStatus:
        lora = self._require_lora()
        await self._require_user(user_id)
        return await lora.check_generation(request_id, user_id)
