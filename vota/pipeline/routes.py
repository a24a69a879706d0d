"""
FastAPI routes for the selfie → AI video service (all under /api).

Upload Endpoints:
  POST /uploads            — Submit a selfie video, face extraction starts in background
  GET  /uploads/{id}       — Upload status (always 200 for a known id)

Video Endpoints:
  POST /videos             — Start AI video generation for a user with a face image
  GET  /videos/{id}        — Poll a video; advances generation → face swap → completed

User Endpoints:
  POST /users                       — Create a user
  GET  /users/{id}                  — Get a user
  GET  /users/{id}/videos           — List a user's videos
  GET  /users/{id}/uploads          — List a user's uploads
  GET  /users/{id}/api-usage        — Cost summary + 10 most recent ledger records
  POST /users/{id}/lora             — Start LoRA personalisation
  GET  /users/{id}/lora             — LoRA training status
  POST /users/{id}/lora/videos      — Generate a video from the trained LoRA
  GET  /users/{id}/lora/videos/{rid} — LoRA video generation status

Admin / Debug:
  GET  /admin/api-usage                      — Total estimated cost
  GET  /debug                                — Configuration overview   (ENABLE_DEBUG_ROUTES)
  GET  /debug/replicate/test-connection      — Provider connectivity    (ENABLE_DEBUG_ROUTES)
  GET  /debug/cost-summary/{user_id}         — Per-user cost summary    (ENABLE_DEBUG_ROUTES)
  GET  /debug/falai/test-connection          — fal.ai connectivity      (ENABLE_DEBUG_ROUTES)
  GET  /debug/falai/generation-status/{rid}  — Raw LoRA generation status (ENABLE_DEBUG_ROUTES)
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request

from ..errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ProviderApiError,
    ValidationError,
    solution_for,
)
from .models import (
    LoraGenerateRequest,
    LoraTrainRequest,
    UploadCreateRequest,
    UserCreateRequest,
    VideoCreateRequest,
)
from .orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.services.orchestrator


def _provider_error(e: Exception, message: str) -> HTTPException:
    detail = {"message": message, "error": str(e)}
    if isinstance(e, AuthenticationError):
        detail["solution"] = solution_for(e)
    return HTTPException(status_code=502, detail=detail)


# ═════════════════════════════════════════════════════════════════════════════
# Upload Router
# ═════════════════════════════════════════════════════════════════════════════

upload_router = APIRouter(prefix="/api/uploads", tags=["uploads"])


@upload_router.post("")
async def create_upload(
    request: UploadCreateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Accept a selfie video and start face extraction in the background."""
    try:
        upload = await orchestrator.start_upload(request.user_id, request.video_data, request.metadata)
        return {"message": "Video upload successful, processing started", "upload_id": upload.id}
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Upload failed for user {request.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@upload_router.get("/{upload_id}")
async def get_upload(upload_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        outcome = await orchestrator.upload_status(upload_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Upload not found")
    return outcome.to_body()


# ═════════════════════════════════════════════════════════════════════════════
# Video Router
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/api/videos", tags=["videos"])


@video_router.post("")
async def create_video(
    request: VideoCreateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Start AI video generation. Returns as soon as a model accepted the job."""
    try:
        video = await orchestrator.create_video(request)
        return {"message": "Video generation started", "video_id": video.id, "status": video.status.value}
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to start video generation")
    except Exception as e:
        logger.error(f"Video creation failed for user {request.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.get("/{video_id}")
async def get_video(video_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Poll a video. Always 200 for a known id; problems come back in `error`."""
    try:
        outcome = await orchestrator.check_video(video_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Video not found")
    return outcome.to_body()


# ═════════════════════════════════════════════════════════════════════════════
# User Router
# ═════════════════════════════════════════════════════════════════════════════

user_router = APIRouter(prefix="/api/users", tags=["users"])


@user_router.post("")
async def create_user(
    request: UserCreateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        user = await orchestrator.create_user(request.username, request.email)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return user.model_dump(mode="json")


@user_router.get("/{user_id}")
async def get_user(user_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        user = await orchestrator.get_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return user.model_dump(mode="json")


@user_router.get("/{user_id}/videos")
async def list_user_videos(user_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        videos = await orchestrator.list_videos(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return [v.model_dump(mode="json") for v in videos]


@user_router.get("/{user_id}/uploads")
async def list_user_uploads(user_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        uploads = await orchestrator.list_uploads(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return [u.model_dump(mode="json") for u in uploads]


@user_router.get("/{user_id}/api-usage")
async def get_user_usage(user_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.usage_report(user_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


@user_router.post("/{user_id}/lora")
async def start_lora_training(
    user_id: int,
    request: LoraTrainRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Submit the user's selfie video for LoRA personalisation."""
    try:
        result = await orchestrator.start_lora_training(user_id, request.video_data)
        return {"message": "LoRA training started", **result.model_dump()}
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to start LoRA training")


@user_router.get("/{user_id}/lora")
async def get_lora_training(user_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        result = await orchestrator.check_lora_training(user_id)
        return result.model_dump()
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to check LoRA training")


@user_router.post("/{user_id}/lora/videos")
async def generate_lora_video(
    user_id: int,
    request: LoraGenerateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Generate a video with the user's personalised model."""
    try:
        result = await orchestrator.generate_lora_video(user_id, request.prompt)
        return {"message": "LoRA video generation started", **result.model_dump()}
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to start LoRA video generation")


@user_router.get("/{user_id}/lora/videos/{request_id}")
async def get_lora_video(
    user_id: int, request_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        result = await orchestrator.check_lora_generation(user_id, request_id)
        return result.model_dump()
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to check LoRA video generation")


# ═════════════════════════════════════════════════════════════════════════════
# Admin / Debug Routers
# ═════════════════════════════════════════════════════════════════════════════

admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@admin_router.get("/api-usage")
async def get_total_usage(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    total = await orchestrator.total_cost()
    return {"total_cost": total, "timestamp": datetime.now(timezone.utc).isoformat()}


def require_debug(request: Request):
    if not request.app.state.services.settings.enable_debug_routes:
        raise HTTPException(status_code=404, detail="Not Found")


debug_router = APIRouter(prefix="/api/debug", tags=["debug"], dependencies=[Depends(require_debug)])


@debug_router.get("")
async def debug_overview(request: Request):
    settings = request.app.state.services.settings
    return {
        "simulate_providers": settings.simulate_providers,
        "replicate_token_present": bool(settings.replicate_api_token),
        "fal_key_present": bool(settings.fal_key),
        "sendgrid_configured": bool(settings.sendgrid_api_key),
        "storage_backend": settings.storage_backend,
        "video_model": settings.video_model,
        "backup_video_models": settings.backup_video_models,
        "face_swap_model": settings.face_swap_model,
        "face_extract_model": settings.face_extract_model,
        "pending_background_tasks": request.app.state.services.tasks.pending,
    }


@debug_router.get("/replicate/test-connection")
async def debug_test_connection(request: Request):
    return await request.app.state.services.provider.test_connection()


@debug_router.get("/cost-summary/{user_id}")
async def debug_cost_summary(user_id: int, request: Request):
    summary = await request.app.state.services.ledger.user_costs(user_id)
    return {"user_id": user_id, **summary.model_dump()}


def _lora_client(request: Request):
    lora = request.app.state.services.lora
    if lora is None:
        raise HTTPException(status_code=503, detail="LoRA personalisation is not configured (FAL_KEY missing)")
    return lora


@debug_router.get("/falai/test-connection")
async def debug_falai_test_connection(request: Request):
    return await _lora_client(request).test_connection()


@debug_router.get("/falai/generation-status/{request_id}")
async def debug_falai_generation_status(request_id: str, request: Request, user_id: int = 1):
    lora = _lora_client(request)
    try:
        result = await lora.check_generation(request_id, user_id)
    except (AuthenticationError, ProviderApiError) as e:
        raise _provider_error(e, "Failed to check LoRA video generation")
    return {
        "request_id": request_id,
        "status": result.status,
        "video_url": result.video_url,
        "thumbnail_url": result.thumbnail_url,
        "error": result.error,
    }
