import pytest

from vota.config import BACKUP_VIDEO_MODELS, VIDEO_MODEL
from vota.errors import AuthenticationError, GenerationFailedError, ProviderApiError
from vota.fallback import FallbackSelector, build_payload
from vota.pipeline.models import GenerationRequest

REQUEST = GenerationRequest(prompt="a dancing robot")
PRIMARY = "primary/model:1"
BACKUPS = ["backup/one:1", "backup/two:2", "backup/three:3"]


@pytest.mark.parametrize("k", [0, 1, 2, 3])
async def test_first_success_wins_in_order(provider, k):
    chain = [PRIMARY] + BACKUPS
    for model in chain[:k]:
        provider.submit_errors[model] = ProviderApiError(f"{model} unavailable", status=500)

    handle = await FallbackSelector(provider).generate(REQUEST, 1, PRIMARY, BACKUPS)

    assert handle.model == chain[k]
    assert [job.model for job in provider.submitted] == chain[: k + 1]
    assert all(job.endpoint == "replicate/video-generation" for job in provider.submitted)


async def test_all_failures_are_aggregated_in_order(provider):
    for model in [PRIMARY] + BACKUPS:
        provider.submit_errors[model] = ProviderApiError(f"{model} unavailable", status=500)

    with pytest.raises(GenerationFailedError) as exc_info:
        await FallbackSelector(provider).generate(REQUEST, 1, PRIMARY, BACKUPS)

    error = exc_info.value
    assert error.failures == [
        "Primary model error: primary/model:1 unavailable",
        "Backup model 1 error: backup/one:1 unavailable",
        "Backup model 2 error: backup/two:2 unavailable",
        "Backup model 3 error: backup/three:3 unavailable",
    ]
    message = str(error)
    positions = [message.index(f) for f in error.failures]
    assert positions == sorted(positions)


async def test_authentication_error_stops_the_chain(provider):
    provider.submit_errors[PRIMARY] = AuthenticationError("bad token")

    with pytest.raises(AuthenticationError):
        await FallbackSelector(provider).generate(REQUEST, 1, PRIMARY, BACKUPS)

    assert len(provider.submitted) == 1


def test_payloads_are_keyed_by_exact_model_id():
    assert build_payload(VIDEO_MODEL, REQUEST) == {"prompt": "a dancing robot", "num_frames": 24, "fps": 8}
    assert build_payload(BACKUP_VIDEO_MODELS[1], REQUEST)["video_length"] == "14_frames_with_svd"
    assert build_payload(BACKUP_VIDEO_MODELS[2], REQUEST) == {"prompt": "a dancing robot"}
    assert build_payload(BACKUP_VIDEO_MODELS[3], REQUEST) == {"prompt": "a dancing robot"}


def test_unknown_model_gets_default_payload():
    # Similar-looking ids are not matched by substring
    payload = build_payload("someone/zeroscope-fork:deadbeef", REQUEST)
    assert payload == {"prompt": "a dancing robot", "width": 512, "height": 512, "num_frames": 24, "fps": 8}
