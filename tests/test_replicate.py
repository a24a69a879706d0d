import json

import httpx
import pytest

from vota.cost_tracker import CostTracker
from vota.errors import AuthenticationError, ConfigurationError, ProviderApiError
from vota.metrics import ProviderMetrics
from vota.config import Settings
from vota.pipeline.models import PredictionJob, PredictionState, UsageStatus
from vota.replicate import ReplicateClient, first_output


def make_client(settings, store, handler, metrics=None):
    return ReplicateClient(
        settings, CostTracker(store), metrics or ProviderMetrics(), transport=httpx.MockTransport(handler)
    )


def job(**overrides):
    fields = {
        "model": "owner/model:abc123",
        "input": {"prompt": "hello"},
        "user_id": 7,
        "endpoint": "replicate/video-generation",
    }
    fields.update(overrides)
    return PredictionJob(**fields)


def test_missing_token_is_a_configuration_error(store):
    with pytest.raises(ConfigurationError):
        ReplicateClient(Settings(replicate_api_token=""), CostTracker(store))


async def test_submit_posts_prediction_and_records_usage(settings, store):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "pred-1", "status": "starting"})

    client = make_client(settings, store, handler)
    handle = await client.submit(job())

    assert handle.id == "pred-1"
    assert seen["url"] == "https://api.replicate.com/v1/predictions"
    assert seen["auth"] == "Token test-token"
    assert seen["body"] == {"version": "owner/model:abc123", "input": {"prompt": "hello"}}

    records = await store.all_usage()
    assert len(records) == 1
    assert records[0].endpoint == "replicate/video-generation"
    assert records[0].status == UsageStatus.SUCCESS
    assert records[0].request_id == "pred-1"
    assert records[0].estimated_cost == 0.05
    assert records[0].request_payload_size > 0


@pytest.mark.parametrize("status", [401, 403])
async def test_submit_auth_failure(settings, store, status):
    client = make_client(settings, store, lambda r: httpx.Response(status, json={"detail": "Invalid token"}))

    with pytest.raises(AuthenticationError):
        await client.submit(job())

    records = await store.all_usage()
    assert len(records) == 1
    assert records[0].status == UsageStatus.ERROR


async def test_submit_rejected_carries_status(settings, store):
    metrics = ProviderMetrics()
    client = make_client(
        settings, store, lambda r: httpx.Response(422, json={"detail": "Invalid input"}), metrics
    )

    with pytest.raises(ProviderApiError) as exc_info:
        await client.submit(job())

    assert exc_info.value.status == 422
    assert "422" in str(exc_info.value)
    assert metrics.snapshot()["counters"]["errors.replicate/video-generation"] == 1


async def test_submit_transport_failure_has_status_zero(settings, store):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = make_client(settings, store, handler)

    with pytest.raises(ProviderApiError) as exc_info:
        await client.submit(job())

    assert exc_info.value.status == 0
    assert len(await store.all_usage()) == 1


async def test_poll_collapses_list_output(settings, store):
    def handler(request):
        assert request.url.path == "/v1/predictions/pred-9"
        return httpx.Response(
            200, json={"id": "pred-9", "status": "succeeded", "output": ["a.mp4", "b.mp4"]}
        )

    client = make_client(settings, store, handler)
    prediction = await client.poll("pred-9", 7)

    assert prediction.status == PredictionState.SUCCEEDED
    assert prediction.output == "a.mp4"
    records = await store.all_usage()
    assert [r.endpoint for r in records] == ["replicate/status-check"]


@pytest.mark.parametrize(
    "upstream, expected",
    [
        ("starting", PredictionState.PENDING),
        ("processing", PredictionState.PENDING),
        ("failed", PredictionState.FAILED),
        ("canceled", PredictionState.FAILED),
    ],
)
async def test_poll_state_mapping(settings, store, upstream, expected):
    client = make_client(settings, store, lambda r: httpx.Response(200, json={"id": "p", "status": upstream}))

    prediction = await client.poll("p", 1)

    assert prediction.status == expected
    if expected == PredictionState.FAILED:
        assert prediction.error


async def test_poll_rejected_writes_one_error_record(settings, store):
    metrics = ProviderMetrics()
    client = make_client(
        settings, store, lambda r: httpx.Response(500, json={"detail": "upstream exploded"}), metrics
    )

    with pytest.raises(ProviderApiError) as exc_info:
        await client.poll("pred-3", 7)

    assert exc_info.value.status == 500
    records = await store.all_usage()
    assert len(records) == 1
    assert records[0].endpoint == "replicate/status-check"
    assert records[0].status == UsageStatus.ERROR
    assert records[0].request_id == "pred-3"
    assert "upstream exploded" in records[0].error_message
    assert metrics.snapshot()["counters"]["errors.replicate/status-check"] == 1


async def test_poll_transport_failure_writes_one_error_record(settings, store):
    def handler(request):
        raise httpx.ConnectError("connection reset")

    client = make_client(settings, store, handler)

    with pytest.raises(ProviderApiError) as exc_info:
        await client.poll("pred-4", 7)

    assert exc_info.value.status == 0
    records = await store.all_usage()
    assert len(records) == 1
    assert records[0].endpoint == "replicate/status-check"
    assert records[0].status == UsageStatus.ERROR
    assert records[0].request_id == "pred-4"
    assert records[0].request_payload_size == 0


@pytest.mark.parametrize(
    "handler, expected",
    [
        (lambda r: httpx.Response(422, json={"detail": "Invalid input"}), "ProviderApiError"),
        (lambda r: httpx.Response(401, json={"detail": "Invalid token"}), "AuthenticationError"),
    ],
)
async def test_recent_errors_name_the_exception_class(settings, store, handler, expected):
    metrics = ProviderMetrics()
    client = make_client(settings, store, handler, metrics)

    with pytest.raises(Exception):
        await client.submit(job())

    recent = metrics.snapshot()["recent_errors"]
    assert len(recent) == 1
    assert recent[0]["error_type"] == expected
    assert recent[0]["endpoint"] == "replicate/video-generation"


def test_first_output():
    assert first_output(["x", "y"]) == "x"
    assert first_output([]) is None
    assert first_output(None) is None
    assert first_output("z") == "z"


async def test_test_connection(settings, store):
    client = make_client(settings, store, lambda r: httpx.Response(200, json={}))
    result = await client.test_connection()
    assert result["success"] is True
    assert await store.all_usage() == []
