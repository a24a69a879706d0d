"""
Pydantic models and enums for the selfie → AI video pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Statuses ─────────────────────────────────────────────────────────────────

class UserProcessingStatus(str, Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VideoStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UsageStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class PredictionState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_UPLOAD_STATUSES = {UploadStatus.COMPLETED, UploadStatus.FAILED}
TERMINAL_VIDEO_STATUSES = {VideoStatus.COMPLETED, VideoStatus.FAILED}

# Upload.video_data never holds the payload itself
VIDEO_DATA_MARKER = "VIDEO_DATA_PROCESSED"


# ── Records ──────────────────────────────────────────────────────────────────

class User(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    face_image_url: Optional[str] = None
    processing_status: UserProcessingStatus = UserProcessingStatus.NOT_STARTED
    lora_id: Optional[str] = None
    training_status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Upload(BaseModel):
    id: int
    user_id: int
    video_data: str = VIDEO_DATA_MARKER
    face_image_url: Optional[str] = None
    processing_status: UploadStatus = UploadStatus.PENDING
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Video(BaseModel):
    id: int
    user_id: int
    title: str
    prompt: str
    negative_prompt: str = ""
    aspect_ratio: str = "16:9"
    duration: int = 5
    cfg_scale: float = 0.5
    notification_email: Optional[str] = None
    video_url: Optional[str] = None
    raw_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    status: VideoStatus = VideoStatus.PROCESSING
    error_message: Optional[str] = None
    request_id: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def in_swap_phase(self) -> bool:
        return self.raw_video_url is not None


class UsageRecord(BaseModel):
    id: int
    user_id: int
    endpoint: str
    request_id: Optional[str] = None
    request_payload_size: int = 0
    response_payload_size: int = 0
    status: UsageStatus
    error_message: Optional[str] = None
    duration_ms: int = 0
    estimated_cost: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class UsageCreate(BaseModel):
    user_id: int
    endpoint: str
    request_id: Optional[str] = None
    request_payload_size: int = 0
    response_payload_size: int = 0
    status: UsageStatus
    error_message: Optional[str] = None
    duration_ms: int = 0
    estimated_cost: float = 0.0


class VideoCreate(BaseModel):
    user_id: int
    title: str
    prompt: str
    negative_prompt: str = ""
    aspect_ratio: str = "16:9"
    duration: int = 5
    cfg_scale: float = 0.5
    notification_email: Optional[str] = None


class CostSummary(BaseModel):
    total_cost: float = 0.0
    usage_count: int = 0


# ── Provider jobs ────────────────────────────────────────────────────────────

class PredictionJob(BaseModel):
    """One outbound prediction request."""
    model: str
    input: dict[str, Any]
    user_id: int
    endpoint: str = "replicate/prediction"


class JobHandle(BaseModel):
    id: str
    model: str = ""
    status: str = "starting"


class Prediction(BaseModel):
    id: str
    status: PredictionState
    output: Optional[str] = None
    error: Optional[str] = None


class GenerationRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    aspect_ratio: str = "16:9"
    duration: int = 5
    cfg_scale: float = 0.5


# ── API request models ───────────────────────────────────────────────────────

class UploadCreateRequest(BaseModel):
    video_data: str = Field(..., min_length=1, description="Base64 or data-URL encoded selfie video")
    user_id: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class VideoCreateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    user_id: int
    title: str = Field(..., min_length=1)
    negative_prompt: str = ""
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"
    duration: Literal[5, 10] = 5
    cfg_scale: float = Field(0.5, ge=0.0, le=1.0)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        v = v.strip()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("email must be a valid address")
        return v


class UserCreateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    email: Optional[str] = None


class LoraTrainRequest(BaseModel):
    video_data: str = Field(..., min_length=1)


class LoraGenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


# ── Status outcomes ──────────────────────────────────────────────────────────

class UploadOutcome(BaseModel):
    """Result of an upload status check; rendered with HTTP 200 whatever the status."""
    upload: Upload
    message: Optional[str] = None

    def to_body(self) -> dict:
        body = self.upload.model_dump(mode="json")
        if self.message:
            body["message"] = self.message
        return body


class VideoOutcome(BaseModel):
    """Result of a video status check; rendered with HTTP 200 whatever the status."""
    video: Video
    message: Optional[str] = None
    progress: Optional[float] = None
    error: Optional[str] = None

    def to_body(self) -> dict:
        body = self.video.model_dump(mode="json")
        for key in ("message", "progress", "error"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        return body
