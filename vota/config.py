"""
Runtime configuration.

Everything is read from the environment (and an optional .env file) once, at
startup, into a Settings object that is handed to each component constructor.
"""

import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# ── Model identifiers ────────────────────────────────────────────────────────

VIDEO_MODEL = "stability-ai/stable-video-diffusion:3f0457e4619daac51203dedb472816fd4af51f3149fa7a9e0b5ffcf1b8172438"

BACKUP_VIDEO_MODELS = [
    "cjwbw/damo-text-to-video:1e205ea73084bd1f48cf12292218629e3b9fd9e63fc45f7c34a0267a4a8c175e",
    "stability-ai/stable-video-diffusion:cf91c35338de27f2a2e4e00358c1e6acca289577de01f59ca9fed2c556c28c60",
    "anotherjesse/zeroscope-v2-xl:9f747673945c62801b13b4a6f2fa26925f92c4193684f23e1dc6d7fa88710286",
    "cerspense/zeroscope_v2_576w:63da0069206d88e3808a349a1cd9a07d39123e0e8c83566abbad0ddb8580e9c5",
]

FACE_SWAP_MODEL = "lucataco/faceswap-plus:0d9b8ab75eea7b60486fbc361a4566438e84c2f693aeb15af9ab36048b21ac95"
FACE_EXTRACT_MODEL = "xinntao/facexlib:c455e6fa874b7ec9f64c5eca07fa1688fe1c2c151ce507e03b03ba5a550589f5"

PLACEHOLDER_FACE_URL = "https://replicate.delivery/pbxt/7oFCB2DH1fJtKSZza4upYNH7ZS03lMiAy3fNaP09YWzONUOIA/face.png"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Service configuration. Build with Settings.from_env() in production."""

    # Providers
    replicate_api_token: str = ""
    replicate_api_base: str = "https://api.replicate.com/v1"
    fal_key: str = ""
    fal_api_base: str = "https://api.fal.ai"
    provider_timeout_seconds: float = 60.0
    provider_debug: bool = False
    simulate_providers: bool = False

    video_model: str = VIDEO_MODEL
    backup_video_models: list[str] = Field(default_factory=lambda: list(BACKUP_VIDEO_MODELS))
    face_swap_model: str = FACE_SWAP_MODEL
    face_extract_model: str = FACE_EXTRACT_MODEL
    placeholder_face_url: str = PLACEHOLDER_FACE_URL

    # Face extraction polling window
    extraction_poll_attempts: int = Field(20, ge=1)
    extraction_poll_interval_seconds: float = Field(2.0, ge=0)

    background_task_retries: int = Field(0, ge=0)
    lora_max_video_chars: int = 26_000_000

    # Email
    sendgrid_api_key: str = ""
    sendgrid_api_base: str = "https://api.sendgrid.com/v3"
    sendgrid_from_email: str = "notifications@vota-ai.com"
    public_url: str = "https://vota-ai.com"

    # Storage
    storage_backend: Literal["memory", "supabase"] = "memory"
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # App
    enable_debug_routes: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Load .env (if present) and read every setting from the environment."""
        load_dotenv(env_file)
        return cls(
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN", ""),
            replicate_api_base=os.getenv("REPLICATE_API_BASE", "https://api.replicate.com/v1"),
            fal_key=os.getenv("FAL_KEY", ""),
            fal_api_base=os.getenv("FAL_API_BASE", "https://api.fal.ai"),
            provider_timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "60")),
            provider_debug=_env_bool("PROVIDER_DEBUG"),
            simulate_providers=_env_bool("SIMULATE_PROVIDERS"),
            video_model=os.getenv("VIDEO_MODEL", VIDEO_MODEL),
            backup_video_models=_env_list("BACKUP_VIDEO_MODELS", BACKUP_VIDEO_MODELS),
            face_swap_model=os.getenv("FACE_SWAP_MODEL", FACE_SWAP_MODEL),
            face_extract_model=os.getenv("FACE_EXTRACT_MODEL", FACE_EXTRACT_MODEL),
            placeholder_face_url=os.getenv("PLACEHOLDER_FACE_URL", PLACEHOLDER_FACE_URL),
            extraction_poll_attempts=int(os.getenv("EXTRACTION_POLL_ATTEMPTS", "20")),
            extraction_poll_interval_seconds=float(os.getenv("EXTRACTION_POLL_INTERVAL_SECONDS", "2")),
            background_task_retries=int(os.getenv("BACKGROUND_TASK_RETRIES", "0")),
            lora_max_video_chars=int(os.getenv("LORA_MAX_VIDEO_CHARS", "26000000")),
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY", ""),
            sendgrid_from_email=os.getenv("SENDGRID_FROM_EMAIL", "notifications@vota-ai.com"),
            public_url=os.getenv("PUBLIC_URL", "https://vota-ai.com"),
            storage_backend=os.getenv("STORAGE_BACKEND", "memory"),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            enable_debug_routes=_env_bool("ENABLE_DEBUG_ROUTES"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
