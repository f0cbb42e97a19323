"""Tests for the HTTP routes."""

import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from redis.exceptions import ConnectionError as RedisConnectionError

from trainer_api.errors import TransportError
from trainer_api.main import Services, app, get_services
from trainer_api.idempotency import MemoryProcessedStore
from trainer_api.models import TrainingJob
from trainer_api.poller import StatusPoller
from trainer_api.training import TrainingLauncher

from fakes import FakeJobs, mock_client


class UnreachableStore:
    async def get(self, job_id):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")


class StubPipeline:
    async def process_weights(self, archive_url, job_id):
        raise AssertionError("pipeline must not run for unfinished jobs")

    def cleanup(self, job_id):
        pass


def _png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def jobs():
    return FakeJobs(TrainingJob(id="job-1", status="processing", logs="step 10/1000"))


@pytest.fixture
def services(tmp_path, jobs, bundle_store):
    uploads = tmp_path / "uploads"
    return Services(
        jobs=jobs,
        poller=StatusPoller(jobs, StubPipeline(), MemoryProcessedStore()),
        launcher=TrainingLauncher(jobs, bundle_store, uploads, "ostris/trainer:v1", "me/model"),
        downloads=mock_client({"https://replicate.delivery/out-0.webp": b"RIFFwebp"}),
        uploads=uploads,
        min_images=5,
        generation_model="fofr/robovan:v9",
    )


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


class TestUploadImages:
    def test_images_are_stored(self, client, services):
        files = [("images", (f"photo{i}.PNG", _png(), "image/png")) for i in range(5)]
        response = client.post("/api/upload-images", files=files)

        assert response.status_code == 200
        stored = response.json()["files"]
        assert len(stored) == 5
        for item in stored:
            assert item["filename"].endswith(".png")
            assert (services.uploads / item["filename"]).exists()

    def test_too_few_images(self, client):
        files = [("images", (f"photo{i}.png", _png(), "image/png")) for i in range(4)]
        response = client.post("/api/upload-images", files=files)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"
        assert "at least 5" in response.json()["details"]

    def test_undecodable_image(self, client):
        files = [("images", (f"photo{i}.png", b"not a png", "image/png")) for i in range(5)]
        response = client.post("/api/upload-images", files=files)
        assert response.status_code == 400

    def test_bad_file_leaves_nothing_behind(self, client, services):
        files = [("images", (f"photo{i}.png", _png(), "image/png")) for i in range(5)]
        files[3] = ("images", ("photo3.png", b"not a png", "image/png"))
        response = client.post("/api/upload-images", files=files)

        assert response.status_code == 400
        assert "photo3.png" in response.json()["details"]
        assert not services.uploads.exists() or not any(services.uploads.iterdir())


def test_start_training_requires_five_images(client, jobs):
    response = client.post("/api/start-training", json={"imageFiles": [{"filename": "a.png"}] * 4})

    assert response.status_code == 400
    assert set(response.json()) == {"error", "details"}
    assert jobs.submitted == []


def test_check_status_passes_remote_fields(client):
    response = client.get("/api/check-training-status/job-1")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processing"
    assert body["logs"] == "step 10/1000"


def test_check_status_upstream_failure(client, jobs):
    jobs.error = TransportError("GET /trainings/job-1 returned HTTP 500", status_code=500)
    response = client.get("/api/check-training-status/job-1")

    assert response.status_code == 502
    assert response.json()["error"] == "Upstream service failed"


def test_reset_unknown_job(client):
    assert client.post("/api/reset-training/job-1").json() == {"id": "job-1", "reset": False}


def test_generate_image(client, jobs):
    response = client.post("/api/generate-image", json={"prompt": "a TOK van", "extra_lora": "https://x/lora.safetensors"})

    assert response.status_code == 200
    body = response.json()
    assert body["imageUrl"] == "https://replicate.delivery/out-0.webp"
    assert body["base64Image"] == "data:image/webp;base64,UklGRndlYnA="
    params = jobs.predictions[0]["params"]
    assert params["prompt"] == "a TOK van"
    assert params["extra_lora"] == "https://x/lora.safetensors"
    assert params["num_inference_steps"] == 28


def test_check_status_store_outage_keeps_error_shape(services, jobs):
    jobs.training = TrainingJob(
        id="job-1", status="succeeded", output={"weights": "https://replicate.delivery/yhqm/trained_model.tar"}
    )
    services.poller = StatusPoller(jobs, StubPipeline(), UnreachableStore())
    app.dependency_overrides[get_services] = lambda: services
    try:
        response = TestClient(app, raise_server_exceptions=False).get("/api/check-training-status/job-1")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert set(response.json()) == {"error", "details"}
    assert response.json()["error"] == "Request failed"
    assert "6379" in response.json()["details"]


def test_generate_image_without_output(client, jobs):
    jobs.prediction_output = []
    response = client.post("/api/generate-image", json={"prompt": "a TOK van"})

    assert response.status_code == 502
    assert "no image" in response.json()["details"]
