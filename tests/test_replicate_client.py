import json

import httpx
import pytest

from trainer_api.errors import TransportError, ValidationError
from trainer_api.replicate_client import ReplicateClient, parse_model_ref

BASE = "https://api.replicate.com/v1"


def _client(handler):
    http = httpx.AsyncClient(
        base_url=BASE,
        headers={"Authorization": "Bearer r8_test"},
        transport=httpx.MockTransport(handler),
    )
    return ReplicateClient(http)


def test_parse_model_ref():
    assert parse_model_ref("ostris/flux-dev-lora-trainer:abc123") == ("ostris", "flux-dev-lora-trainer", "abc123")
    with pytest.raises(ValidationError):
        parse_model_ref("flux-dev-lora-trainer")


@pytest.mark.asyncio
async def test_submit_posts_training():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "t-1", "status": "starting", "urls": {"get": "x"}})

    job = await _client(handler).submit("ostris/trainer:v1", {"steps": 10}, destination="me/model")

    assert seen["path"] == "/v1/models/ostris/trainer/versions/v1/trainings"
    assert seen["auth"] == "Bearer r8_test"
    assert seen["body"] == {"input": {"steps": 10}, "destination": "me/model"}
    assert job.id == "t-1"
    assert job.model_dump()["urls"] == {"get": "x"}


@pytest.mark.asyncio
async def test_get_status_reads_weights_url():
    def handler(request):
        assert request.url.path == "/v1/trainings/t-1"
        return httpx.Response(200, json={
            "id": "t-1",
            "status": "succeeded",
            "output": {"version": "me/model:v2", "weights": "https://replicate.delivery/w.tar"},
        })

    job = await _client(handler).get_status("t-1")
    assert job.weights_url == "https://replicate.delivery/w.tar"


@pytest.mark.asyncio
async def test_http_error_is_transport_error():
    client = _client(lambda request: httpx.Response(404, json={"detail": "Not found."}))

    with pytest.raises(TransportError) as excinfo:
        await client.get_status("missing")
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_run_prediction_polls_until_done():
    states = iter(["processing", "succeeded"])

    def handler(request):
        if request.method == "POST":
            assert request.headers["prefer"] == "wait"
            return httpx.Response(201, json={"id": "p-1", "status": "starting"})
        status = next(states)
        output = ["https://replicate.delivery/out.webp"] if status == "succeeded" else None
        return httpx.Response(200, json={"id": "p-1", "status": status, "output": output})

    output = await _client(handler).run_prediction("fofr/robovan:v9", {"prompt": "a van"}, poll_interval=0)
    assert output == ["https://replicate.delivery/out.webp"]


@pytest.mark.asyncio
async def test_failed_prediction():
    def handler(request):
        return httpx.Response(201, json={"id": "p-1", "status": "failed", "error": "NSFW"})

    with pytest.raises(TransportError):
        await _client(handler).run_prediction("fofr/robovan:v9", {"prompt": "x"})
