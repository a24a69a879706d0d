import json

import httpx
import pytest
from fastapi.testclient import TestClient

from vota.config import Settings
from vota.main import build_services, create_app
from vota.pipeline.store import MemoryStore
from vota.simulated import SAMPLE_SWAP_URL, SAMPLE_VIDEO_URL


def simulated_app(**overrides):
    settings = Settings(
        simulate_providers=True,
        extraction_poll_interval_seconds=0,
        **overrides,
    )
    return create_app(build_services(settings, store=MemoryStore()))


@pytest.fixture
def client():
    with TestClient(simulated_app()) as client:
        yield client


def create_user(client, username="alice", email="alice@example.com"):
    resp = client.post("/api/users", json={"username": username, "email": email})
    assert resp.status_code == 200
    return resp.json()


def give_face(client, user_id):
    store = client.app.state.services.store
    client.portal.call(store.update_user, user_id, {"face_image_url": "https://cdn.example.com/face.png"})


def test_health_and_metrics(client):
    assert client.get("/health").json()["status"] == "ok"
    assert "counters" in client.get("/metrics").json()


def test_upload_flow(client):
    user = create_user(client)

    resp = client.post("/api/uploads", json={"video_data": "data:video/webm;base64,AAAA", "user_id": user["id"]})
    assert resp.status_code == 200
    upload_id = resp.json()["upload_id"]

    resp = client.get(f"/api/uploads/{upload_id}")
    assert resp.status_code == 200
    assert resp.json()["processing_status"] in ("processing", "completed")
    assert resp.json()["video_data"] == "VIDEO_DATA_PROCESSED"


def test_upload_unknown_user(client):
    resp = client.post("/api/uploads", json={"video_data": "AAAA", "user_id": 999})
    assert resp.status_code == 404


def test_video_flow_through_face_swap(client):
    user = create_user(client)
    give_face(client, user["id"])

    resp = client.post("/api/videos", json={"prompt": "a cat surfing", "user_id": user["id"], "title": "Surf"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "processing"
    video_id = resp.json()["video_id"]

    body = client.get(f"/api/videos/{video_id}").json()
    assert body["progress"] == 0.5
    assert body["raw_video_url"] == SAMPLE_VIDEO_URL

    body = client.get(f"/api/videos/{video_id}").json()
    assert body["status"] == "completed"
    assert body["video_url"] == SAMPLE_SWAP_URL

    videos = client.get(f"/api/users/{user['id']}/videos").json()
    assert [v["id"] for v in videos] == [video_id]


def test_video_requires_face(client):
    user = create_user(client)
    resp = client.post("/api/videos", json={"prompt": "p", "user_id": user["id"], "title": "t"})
    assert resp.status_code == 400


def test_invalid_body(client):
    resp = client.post("/api/videos", json={"user_id": 1, "title": "t", "aspect_ratio": "4:3"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid input data"
    assert resp.json()["errors"]


def test_unknown_ids(client):
    assert client.get("/api/videos/123").status_code == 404
    assert client.get("/api/uploads/123").status_code == 404
    assert client.get("/api/users/123").status_code == 404
    assert client.get("/api/users/123/api-usage").status_code == 404


def test_duplicate_user(client):
    create_user(client)
    assert client.post("/api/users", json={"username": "alice"}).status_code == 400


def test_admin_usage(client):
    body = client.get("/api/admin/api-usage").json()
    assert body["total_cost"] == 0.0
    assert "timestamp" in body


def test_debug_routes_hidden_by_default(client):
    assert client.get("/api/debug").status_code == 404
    assert client.get("/api/debug/replicate/test-connection").status_code == 404


def test_debug_routes_when_enabled():
    with TestClient(simulated_app(enable_debug_routes=True)) as client:
        assert client.get("/api/debug").json()["simulate_providers"] is True
        assert client.get("/api/debug/replicate/test-connection").json()["success"] is True
        assert client.get("/api/debug/cost-summary/1").json()["usage_count"] == 0


def test_lora_disabled_without_fal_key(client):
    user = create_user(client)
    resp = client.post(f"/api/users/{user['id']}/lora", json={"video_data": "AAAA"})
    assert resp.status_code == 503


def replicate_app(handler):
    settings = Settings(replicate_api_token="test-token")
    services = build_services(settings, store=MemoryStore(), transport=httpx.MockTransport(handler))
    return create_app(services)


def test_provider_failure_is_bad_gateway():
    app = replicate_app(lambda r: httpx.Response(500, json={"detail": "Internal error"}))
    with TestClient(app) as client:
        user = create_user(client)
        give_face(client, user["id"])

        resp = client.post("/api/videos", json={"prompt": "p", "user_id": user["id"], "title": "t"})

        assert resp.status_code == 502
        assert "All video generation models failed" in resp.json()["detail"]["error"]
        video = client.get(f"/api/users/{user['id']}/videos").json()[0]
        assert video["status"] == "failed"

        usage = client.get(f"/api/users/{user['id']}/api-usage").json()
        assert usage["usage_count"] == 5


def test_authentication_failure_includes_solution():
    app = replicate_app(lambda r: httpx.Response(401, json={"detail": "Invalid token"}))
    with TestClient(app) as client:
        user = create_user(client)
        give_face(client, user["id"])

        resp = client.post("/api/videos", json={"prompt": "p", "user_id": user["id"], "title": "t"})

        assert resp.status_code == 502
        assert "solution" in resp.json()["detail"]


def fal_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/v2/fal/klingtube/train":
        return httpx.Response(200, json={"request_id": "req-t", "lora_id": "lora-1", "status": "training"})
    if path == "/v2/fal/klingtube/generate":
        assert json.loads(request.content)["lora_id"] == "lora-1"
        return httpx.Response(200, json={"request_id": "gen-1", "status": "queued"})
    if path == "/v2/fal/klingtube/check-generation":
        return httpx.Response(200, json={
            "request_id": request.url.params["request_id"],
            "status": "completed",
            "video_url": "https://fal.example.com/gen-1.mp4",
            "thumbnail_url": "https://fal.example.com/gen-1.jpg",
        })
    return httpx.Response(200, json={})


def fal_app():
    settings = Settings(
        simulate_providers=True,
        fal_key="fal-secret",
        enable_debug_routes=True,
        extraction_poll_interval_seconds=0,
    )
    services = build_services(settings, store=MemoryStore(), transport=httpx.MockTransport(fal_handler))
    return create_app(services)


def test_lora_video_flow():
    with TestClient(fal_app()) as client:
        user = create_user(client)

        resp = client.post(f"/api/users/{user['id']}/lora/videos", json={"prompt": "me surfing"})
        assert resp.status_code == 400

        resp = client.post(f"/api/users/{user['id']}/lora", json={"video_data": "AAAA"})
        assert resp.status_code == 200
        assert resp.json()["lora_id"] == "lora-1"

        resp = client.post(f"/api/users/{user['id']}/lora/videos", json={"prompt": "me surfing"})
        assert resp.status_code == 200
        assert resp.json()["request_id"] == "gen-1"

        body = client.get(f"/api/users/{user['id']}/lora/videos/gen-1").json()
        assert body["status"] == "completed"
        assert body["video_url"] == "https://fal.example.com/gen-1.mp4"

        usage = client.get(f"/api/users/{user['id']}/api-usage").json()
        endpoints = [r["endpoint"] for r in usage["recent_usage"]]
        assert sorted(endpoints) == ["fal/check-generation", "fal/generate", "fal/train"]


def test_lora_video_routes_need_fal_key(client):
    user = create_user(client)
    assert client.post(f"/api/users/{user['id']}/lora/videos", json={"prompt": "p"}).status_code == 503
    assert client.get(f"/api/users/{user['id']}/lora/videos/gen-1").status_code == 503


def test_falai_debug_routes():
    with TestClient(fal_app()) as client:
        result = client.get("/api/debug/falai/test-connection").json()
        assert result["success"] is True
        assert result["endpoints"]["generate"].endswith("/v2/fal/klingtube/generate")

        status = client.get("/api/debug/falai/generation-status/gen-7").json()
        assert status["request_id"] == "gen-7"
        assert status["status"] == "completed"
        assert status["thumbnail_url"] == "https://fal.example.com/gen-1.jpg"


def test_falai_debug_routes_without_fal_key():
    with TestClient(simulated_app(enable_debug_routes=True)) as client:
        assert client.get("/api/debug/falai/test-connection").status_code == 503
