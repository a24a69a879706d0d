import asyncio
from typing import Optional, Union

import pytest

from vota.config import Settings
from vota.cost_tracker import CostTracker
from vota.faces import FaceStudio
from vota.fallback import FallbackSelector
from vota.pipeline.models import JobHandle, PredictionJob, Prediction, PredictionState
from vota.pipeline.orchestrator import PipelineOrchestrator
from vota.pipeline.store import MemoryStore
from vota.pipeline.tasks import TaskRunner


class FakeProvider:
    """Scripted prediction provider.

    Handles are issued as job-1, job-2, ... in submit order. A poll returns
    whatever was scripted for that id (a Prediction or an exception to raise),
    pending otherwise.
    """

    def __init__(self):
        self.submitted: list[PredictionJob] = []
        self.polls: list[str] = []
        self.submit_errors: dict[str, Exception] = {}
        self.results: dict[str, Union[Prediction, Exception]] = {}
        self._n = 0

    async def submit(self, job: PredictionJob) -> JobHandle:
        self.submitted.append(job)
        if job.model in self.submit_errors:
            raise self.submit_errors[job.model]
        self._n += 1
        return JobHandle(id=f"job-{self._n}", model=job.model)

    async def poll(self, request_id: str, user_id: int) -> Prediction:
        self.polls.append(request_id)
        await asyncio.sleep(0)
        result = self.results.get(request_id)
        if isinstance(result, Exception):
            raise result
        return result or Prediction(id=request_id, status=PredictionState.PENDING)

    def succeed(self, request_id: str, output: str):
        self.results[request_id] = Prediction(
            id=request_id, status=PredictionState.SUCCEEDED, output=output
        )

    def fail(self, request_id: str, error: Optional[str] = "boom"):
        self.results[request_id] = Prediction(
            id=request_id, status=PredictionState.FAILED, error=error
        )


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, event, user, payload) -> bool:
        self.sent.append((event, user.id, payload.id))
        return True


@pytest.fixture
def settings():
    return Settings(
        replicate_api_token="test-token",
        extraction_poll_attempts=3,
        extraction_poll_interval_seconds=0,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def orchestrator(store, provider, notifier, settings):
    return PipelineOrchestrator(
        store=store,
        provider=provider,
        faces=FaceStudio(provider, settings),
        fallback=FallbackSelector(provider),
        notifier=notifier,
        settings=settings,
        tasks=TaskRunner(),
        ledger=CostTracker(store),
    )


@pytest.fixture
async def user_with_face(store):
    user = await store.create_user("alice", "alice@example.com")
    return await store.update_user(user.id, {"face_image_url": "https://cdn.example.com/face.png"})
