import json

import httpx
import pytest

from vota.config import Settings
from vota.cost_tracker import CostTracker
from vota.errors import AuthenticationError, ConfigurationError, ProviderApiError, ValidationError
from vota.lora import LoraTrainer


@pytest.fixture
def lora_settings():
    return Settings(fal_key="fal-secret", lora_max_video_chars=100)


def trainer(settings, store, handler):
    return LoraTrainer(settings, CostTracker(store), transport=httpx.MockTransport(handler))


def test_missing_fal_key(store):
    with pytest.raises(ConfigurationError):
        LoraTrainer(Settings(), CostTracker(store))


async def test_train_submits_video(lora_settings, store):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"request_id": "req-1", "lora_id": "lora-1", "status": "training"})

    result = await trainer(lora_settings, store, handler).train("AAAA", 3)

    assert result.lora_id == "lora-1"
    assert seen["path"] == "/v2/fal/klingtube/train"
    assert seen["auth"] == "Key fal-secret"
    assert seen["body"]["video_input"] == "AAAA"
    assert seen["body"]["user_id"] == "3"

    records = await store.all_usage()
    assert [(r.endpoint, r.request_id, r.estimated_cost) for r in records] == [("fal/train", "req-1", 0.10)]


async def test_oversized_video_rejected_before_any_call(lora_settings, store):
    calls = []
    lora = trainer(lora_settings, store, lambda r: calls.append(r) or httpx.Response(200, json={}))

    with pytest.raises(ValidationError):
        await lora.train("A" * 101, 3)

    assert calls == []
    assert await store.all_usage() == []


async def test_auth_failure(lora_settings, store):
    lora = trainer(lora_settings, store, lambda r: httpx.Response(403, text="forbidden"))

    with pytest.raises(AuthenticationError):
        await lora.check_training("lora-1", 3)

    records = await store.all_usage()
    assert records[0].endpoint == "fal/check-training"
    assert records[0].status.value == "error"


async def test_check_training_passes_lora_id(lora_settings, store):
    def handler(request):
        assert request.url.params["lora_id"] == "lora-7"
        return httpx.Response(200, json={"status": "completed"})

    result = await trainer(lora_settings, store, handler).check_training("lora-7", 3)

    assert result.status == "completed"
    assert result.lora_id == "lora-7"


async def test_generate_sends_lora_and_prompt(lora_settings, store):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"request_id": "gen-1", "status": "queued"})

    result = await trainer(lora_settings, store, handler).generate("lora-1", "me on the moon", 3)

    assert result.request_id == "gen-1"
    assert result.status == "queued"
    assert seen["path"] == "/v2/fal/klingtube/generate"
    assert seen["auth"] == "Key fal-secret"
    assert seen["body"]["lora_id"] == "lora-1"
    assert seen["body"]["prompt"] == "me on the moon"
    assert seen["body"]["num_frames"] == 25
    assert seen["body"]["num_inference_steps"] == 50
    assert seen["body"]["negative_prompt"]

    records = await store.all_usage()
    assert [(r.endpoint, r.request_id, r.estimated_cost) for r in records] == [("fal/generate", "gen-1", 0.05)]


async def test_check_generation_reports_video(lora_settings, store):
    def handler(request):
        assert request.url.path == "/v2/fal/klingtube/check-generation"
        assert request.url.params["request_id"] == "gen-9"
        return httpx.Response(200, json={
            "status": "completed",
            "video_url": "https://fal.example.com/v.mp4",
            "thumbnail_url": "https://fal.example.com/v.jpg",
        })

    result = await trainer(lora_settings, store, handler).check_generation("gen-9", 3)

    assert result.request_id == "gen-9"
    assert result.status == "completed"
    assert result.video_url == "https://fal.example.com/v.mp4"
    assert result.thumbnail_url == "https://fal.example.com/v.jpg"
    records = await store.all_usage()
    assert [(r.endpoint, r.request_id) for r in records] == [("fal/check-generation", "gen-9")]


async def test_generate_rejected_writes_one_error_record(lora_settings, store):
    lora = trainer(lora_settings, store, lambda r: httpx.Response(500, text="model offline"))

    with pytest.raises(ProviderApiError) as exc_info:
        await lora.generate("lora-1", "prompt", 3)

    assert exc_info.value.status == 500
    records = await store.all_usage()
    assert len(records) == 1
    assert records[0].endpoint == "fal/generate"
    assert records[0].status.value == "error"
    assert "model offline" in records[0].error_message


async def test_test_connection_lists_endpoints(lora_settings, store):
    lora = trainer(lora_settings, store, lambda r: httpx.Response(200, json={}))

    result = await lora.test_connection()

    assert result["success"] is True
    assert result["endpoints"]["generate"] == "https://api.fal.ai/v2/fal/klingtube/generate"
    assert result["endpoints"]["check_generation"].endswith("check-generation?request_id=test-id")
    assert await store.all_usage() == []


async def test_test_connection_reports_rejected_key(lora_settings, store):
    lora = trainer(lora_settings, store, lambda r: httpx.Response(401, text="bad key"))

    result = await lora.test_connection()

    assert result["success"] is False
    assert "401" in result["message"]
