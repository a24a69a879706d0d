"""
Selfie → AI Video Pipeline

  Uploads — selfie video → background face extraction → user face image
  Videos  — prompt → generation (model fallback chain) → face swap → completed
  State   — users, uploads, videos and the usage ledger in a JobStore
"""

from .models import UploadStatus, VideoStatus, UserProcessingStatus
from .store import JobStore, MemoryStore, SupabaseStore, build_store
from .tasks import TaskRunner

__all__ = [
    "UploadStatus",
    "VideoStatus",
    "UserProcessingStatus",
    "JobStore",
    "MemoryStore",
    "SupabaseStore",
    "build_store",
    "TaskRunner",
]
