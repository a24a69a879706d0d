"""
Job state store.

Two backends behind one interface:
  - SupabaseStore — Postgres tables via the supabase service-role client
  - MemoryStore   — process-local dicts, for development mode and tests

Uploads and videos carry a `version` counter that is bumped on every write.
Passing `expected_version` turns an update into a compare-and-swap: if the
row moved on in the meantime nothing is written and ConflictError is raised.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from supabase import Client, create_client

from ..config import Settings
from ..errors import ConfigurationError, ConflictError, NotFoundError
from .models import (
    CostSummary,
    Upload,
    UploadStatus,
    UsageCreate,
    UsageRecord,
    User,
    UserProcessingStatus,
    Video,
    VideoCreate,
    VideoStatus,
    VIDEO_DATA_MARKER,
    utcnow,
)

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
UPLOADS_TABLE = "user_uploads"
VIDEOS_TABLE = "videos"
USAGE_TABLE = "api_usage"


class JobStore(ABC):
    """Persistence for users, uploads, videos and the usage ledger."""

    # ── Users ────────────────────────────────────────────────────────────
    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    async def create_user(self, username: str, email: Optional[str] = None) -> User: ...

    @abstractmethod
    async def update_user(self, user_id: int, fields: dict[str, Any]) -> User: ...

    # ── Uploads ──────────────────────────────────────────────────────────
    @abstractmethod
    async def get_upload(self, upload_id: int) -> Optional[Upload]: ...

    @abstractmethod
    async def list_uploads(self, user_id: int) -> list[Upload]: ...

    @abstractmethod
    async def create_upload(self, user_id: int, metadata: dict[str, Any]) -> Upload: ...

    @abstractmethod
    async def update_upload(
        self, upload_id: int, fields: dict[str, Any], expected_version: Optional[int] = None
    ) -> Upload: ...

    # ── Videos ───────────────────────────────────────────────────────────
    @abstractmethod
    async def get_video(self, video_id: int) -> Optional[Video]: ...

    @abstractmethod
    async def list_videos(self, user_id: int) -> list[Video]: ...

    @abstractmethod
    async def create_video(self, video: VideoCreate) -> Video: ...

    @abstractmethod
    async def update_video(
        self, video_id: int, fields: dict[str, Any], expected_version: Optional[int] = None
    ) -> Video: ...

    # ── Usage ledger ─────────────────────────────────────────────────────
    @abstractmethod
    async def create_usage(self, usage: UsageCreate) -> UsageRecord: ...

    @abstractmethod
    async def list_usage(self, user_id: int) -> list[UsageRecord]: ...

    @abstractmethod
    async def all_usage(self) -> list[UsageRecord]: ...

    async def usage_summary(self, user_id: int) -> CostSummary:
        records = await self.list_usage(user_id)
        total = sum(r.estimated_cost for r in records)
        return CostSummary(total_cost=round(total, 2), usage_count=len(records))

    async def total_cost(self) -> float:
        records = await self.all_usage()
        return round(sum(r.estimated_cost for r in records), 2)


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert enum/datetime values so the row can go over the wire."""
    row = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        row[key] = value
    return row


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class MemoryStore(JobStore):
    """Dict-backed store. Every method body runs without awaiting, so each
    call is atomic with respect to other coroutines on the same loop."""

    def __init__(self):
        self._users: dict[int, User] = {}
        self._uploads: dict[int, Upload] = {}
        self._videos: dict[int, Video] = {}
        self._usage: dict[int, UsageRecord] = {}
        self._ids = {
            USERS_TABLE: itertools.count(1),
            UPLOADS_TABLE: itertools.count(1),
            VIDEOS_TABLE: itertools.count(1),
            USAGE_TABLE: itertools.count(1),
        }

    def _next_id(self, table: str) -> int:
        return next(self._ids[table])

    @staticmethod
    def _merge(record, fields: dict[str, Any]):
        return type(record).model_validate({**record.model_dump(), **fields})

    def _versioned_update(self, rows: dict, kind: str, record_id: int, fields, expected_version):
        current = rows.get(record_id)
        if current is None:
            raise NotFoundError(f"{kind} {record_id} not found")
        if expected_version is not None and current.version != expected_version:
            raise ConflictError(
                f"{kind} {record_id} is at version {current.version}, expected {expected_version}"
            )
        updated = self._merge(current, {**fields, "version": current.version + 1})
        rows[record_id] = updated
        return updated

    # ── Users ────────────────────────────────────────────────────────────
    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.username == username), None)

    async def create_user(self, username: str, email: Optional[str] = None) -> User:
        user = User(id=self._next_id(USERS_TABLE), username=username, email=email)
        self._users[user.id] = user
        return user

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> User:
        current = self._users.get(user_id)
        if current is None:
            raise NotFoundError(f"User {user_id} not found")
        updated = self._merge(current, fields)
        self._users[user_id] = updated
        return updated

    # ── Uploads ──────────────────────────────────────────────────────────
    async def get_upload(self, upload_id: int) -> Optional[Upload]:
        return self._uploads.get(upload_id)

    async def list_uploads(self, user_id: int) -> list[Upload]:
        rows = [u for u in self._uploads.values() if u.user_id == user_id]
        return sorted(rows, key=lambda u: u.id, reverse=True)

    async def create_upload(self, user_id: int, metadata: dict[str, Any]) -> Upload:
        upload = Upload(id=self._next_id(UPLOADS_TABLE), user_id=user_id, metadata=metadata)
        self._uploads[upload.id] = upload
        return upload

    async def update_upload(self, upload_id, fields, expected_version=None) -> Upload:
        return self._versioned_update(self._uploads, "Upload", upload_id, fields, expected_version)

    # ── Videos ───────────────────────────────────────────────────────────
    async def get_video(self, video_id: int) -> Optional[Video]:
        return self._videos.get(video_id)

    async def list_videos(self, user_id: int) -> list[Video]:
        rows = [v for v in self._videos.values() if v.user_id == user_id]
        return sorted(rows, key=lambda v: v.id, reverse=True)

    async def create_video(self, video: VideoCreate) -> Video:
        record = Video(id=self._next_id(VIDEOS_TABLE), **video.model_dump())
        self._videos[record.id] = record
        return record

    async def update_video(self, video_id, fields, expected_version=None) -> Video:
        return self._versioned_update(self._videos, "Video", video_id, fields, expected_version)

    # ── Usage ledger ─────────────────────────────────────────────────────
    async def create_usage(self, usage: UsageCreate) -> UsageRecord:
        record = UsageRecord(id=self._next_id(USAGE_TABLE), **usage.model_dump())
        self._usage[record.id] = record
        return record

    async def list_usage(self, user_id: int) -> list[UsageRecord]:
        rows = [r for r in self._usage.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.id, reverse=True)

    async def all_usage(self) -> list[UsageRecord]:
        return sorted(self._usage.values(), key=lambda r: r.id, reverse=True)


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseStore(JobStore):
    """
    Postgres via the supabase service-role client (bypasses RLS).

    The supabase client is synchronous; every query runs in a worker thread so
    the event loop keeps serving pollers while the database round-trips.
    """

    def __init__(self, client: Client):
        self._sb = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseStore":
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(create_client(settings.supabase_url, settings.supabase_service_role_key))

    async def _run(self, query) -> list[dict]:
        result = await asyncio.to_thread(query.execute)
        return result.data or []

    async def _fetch_one(self, table: str, column: str, value) -> Optional[dict]:
        rows = await self._run(self._sb.table(table).select("*").eq(column, value).limit(1))
        return rows[0] if rows else None

    async def _fetch_many(self, table: str, user_id: Optional[int] = None) -> list[dict]:
        query = self._sb.table(table).select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        return await self._run(query.order("id", desc=True))

    async def _insert(self, table: str, row: dict[str, Any]) -> dict:
        rows = await self._run(self._sb.table(table).insert(_jsonable(row)))
        if not rows:
            raise RuntimeError(f"Insert into {table} returned no row")
        return rows[0]

    async def _versioned_update(self, table: str, kind: str, record_id: int, fields, expected_version):
        if expected_version is None:
            current = await self._fetch_one(table, "id", record_id)
            if current is None:
                raise NotFoundError(f"{kind} {record_id} not found")
            expected_version = current.get("version", 0)
            guard_version = False
        else:
            guard_version = True

        row = _jsonable({**fields, "version": expected_version + 1})
        query = self._sb.table(table).update(row).eq("id", record_id)
        if guard_version:
            query = query.eq("version", expected_version)
        rows = await self._run(query)
        if rows:
            return rows[0]

        # Nothing matched: either the row is gone or the version moved on
        if await self._fetch_one(table, "id", record_id) is None:
            raise NotFoundError(f"{kind} {record_id} not found")
        raise ConflictError(f"{kind} {record_id} changed since version {expected_version}")

    # ── Users ────────────────────────────────────────────────────────────
    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self._fetch_one(USERS_TABLE, "id", user_id)
        return User.model_validate(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetch_one(USERS_TABLE, "username", username)
        return User.model_validate(row) if row else None

    async def create_user(self, username: str, email: Optional[str] = None) -> User:
        row = await self._insert(USERS_TABLE, {
            "username": username,
            "email": email,
            "processing_status": UserProcessingStatus.NOT_STARTED,
            "created_at": utcnow(),
        })
        return User.model_validate(row)

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> User:
        rows = await self._run(
            self._sb.table(USERS_TABLE).update(_jsonable(fields)).eq("id", user_id)
        )
        if not rows:
            raise NotFoundError(f"User {user_id} not found")
        return User.model_validate(rows[0])

    # ── Uploads ──────────────────────────────────────────────────────────
    async def get_upload(self, upload_id: int) -> Optional[Upload]:
        row = await self._fetch_one(UPLOADS_TABLE, "id", upload_id)
        return Upload.model_validate(row) if row else None

    async def list_uploads(self, user_id: int) -> list[Upload]:
        return [Upload.model_validate(r) for r in await self._fetch_many(UPLOADS_TABLE, user_id)]

    async def create_upload(self, user_id: int, metadata: dict[str, Any]) -> Upload:
        row = await self._insert(UPLOADS_TABLE, {
            "user_id": user_id,
            "video_data": VIDEO_DATA_MARKER,
            "processing_status": UploadStatus.PENDING,
            "metadata": metadata,
            "version": 0,
            "created_at": utcnow(),
        })
        return Upload.model_validate(row)

    async def update_upload(self, upload_id, fields, expected_version=None) -> Upload:
        row = await self._versioned_update(UPLOADS_TABLE, "Upload", upload_id, fields, expected_version)
        return Upload.model_validate(row)

    # ── Videos ───────────────────────────────────────────────────────────
    async def get_video(self, video_id: int) -> Optional[Video]:
        row = await self._fetch_one(VIDEOS_TABLE, "id", video_id)
        return Video.model_validate(row) if row else None

    async def list_videos(self, user_id: int) -> list[Video]:
        return [Video.model_validate(r) for r in await self._fetch_many(VIDEOS_TABLE, user_id)]

    async def create_video(self, video: VideoCreate) -> Video:
        row = await self._insert(VIDEOS_TABLE, {
            **video.model_dump(),
            "status": VideoStatus.PROCESSING,
            "version": 0,
            "created_at": utcnow(),
        })
        return Video.model_validate(row)

    async def update_video(self, video_id, fields, expected_version=None) -> Video:
        row = await self._versioned_update(VIDEOS_TABLE, "Video", video_id, fields, expected_version)
        return Video.model_validate(row)

    # ── Usage ledger ─────────────────────────────────────────────────────
    async def create_usage(self, usage: UsageCreate) -> UsageRecord:
        row = await self._insert(USAGE_TABLE, {**usage.model_dump(), "created_at": utcnow()})
        return UsageRecord.model_validate(row)

    async def list_usage(self, user_id: int) -> list[UsageRecord]:
        return [UsageRecord.model_validate(r) for r in await self._fetch_many(USAGE_TABLE, user_id)]

    async def all_usage(self) -> list[UsageRecord]:
        return [UsageRecord.model_validate(r) for r in await self._fetch_many(USAGE_TABLE)]


def build_store(settings: Settings) -> JobStore:
    if settings.storage_backend == "supabase":
        logger.info("Using Supabase job store")
        return SupabaseStore.from_settings(settings)
    logger.info("Using in-memory job store")
    return MemoryStore()
