import asyncio
import io
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from PIL import Image, UnidentifiedImageError

from .blobstore import MultipartBlobStore, S3BlobStore, build_s3_client
from .errors import TrainerError, TransportError, ValidationError
from .idempotency import MemoryProcessedStore, RedisProcessedStore
from .models import (
    ErrorResponse,
    GenerateImageRequest,
    GenerateImageResponse,
    StartTrainingRequest,
    UploadedImage,
    UploadImagesResponse,
)
from .pipeline import WeightsPipeline
from .poller import StatusPoller
from .preview import generate_preview
from .replicate_client import ReplicateClient, build_http_client
from .settings import Settings, get_settings
from .storage import upload_path
from .training import TrainingLauncher

logger = logging.getLogger(__name__)

IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp"}


@dataclass
class Services:
    jobs: ReplicateClient
    poller: StatusPoller
    launcher: TrainingLauncher
    downloads: httpx.AsyncClient
    uploads: Path
    min_images: int
    generation_model: str


def build_services(settings: Settings, api_http: httpx.AsyncClient, downloads: httpx.AsyncClient, store) -> Services:
    s3 = build_s3_client(settings)
    jobs = ReplicateClient(api_http)
    weights_store = MultipartBlobStore(
        s3,
        settings.s3_bucket,
        region=settings.s3_region,
        public_base_url=settings.public_base_url,
        part_size=settings.upload_part_size,
        queue_size=settings.upload_queue_size,
    )
    bundle_store = S3BlobStore(
        s3, settings.bundle_bucket, region=settings.s3_region, public_base_url=settings.public_base_url
    )
    pipeline = WeightsPipeline(
        downloads,
        weights_store,
        settings.work_dir,
        fetch_timeout=settings.fetch_timeout_sec,
        upload_timeout=settings.upload_timeout_sec,
    )
    return Services(
        jobs=jobs,
        poller=StatusPoller(jobs, pipeline, store),
        launcher=TrainingLauncher(
            jobs,
            bundle_store,
            settings.uploads_dir,
            settings.trainer_model,
            settings.training_destination,
            min_images=settings.min_training_images,
        ),
        downloads=downloads,
        uploads=settings.uploads_dir,
        min_images=settings.min_training_images,
        generation_model=settings.generation_model,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings.require()

    rdb = redis.from_url(settings.redis_url) if settings.redis_url else None
    if rdb is None:
        logger.warning("REDIS_URL not set, processed markers will not survive a restart")
    store = RedisProcessedStore(rdb) if rdb is not None else MemoryProcessedStore()

    async with build_http_client(settings) as api_http, httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout_sec)
    ) as downloads:
        app.state.services = build_services(settings, api_http, downloads, store)
        logger.info("Work dir %s, uploads dir %s", settings.work_dir, settings.uploads_dir)
        try:
            yield
        finally:
            if rdb is not None:
                await rdb.aclose()


app = FastAPI(title="LoRA Trainer API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    return request.app.state.services


def _error(status_code: int, error: str, details: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, details=details).model_dump())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error(400, "Invalid request", str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request", str(exc.errors()))


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    logger.error("Upstream failure on %s: %s", request.url.path, exc)
    return _error(502, "Upstream service failed", str(exc))


@app.exception_handler(TrainerError)
async def trainer_error_handler(request: Request, exc: TrainerError):
    logger.error("Request %s failed: %s", request.url.path, exc)
    return _error(500, "Request failed", str(exc))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return _error(500, "Request failed", str(exc))


@app.get("/healthz")
def healthz():
    return {"ok": True}


def _check_image(data: bytes, filename: str) -> None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValidationError(f"{filename} is not a readable image") from exc


@app.post("/api/upload-images", response_model=UploadImagesResponse)
async def upload_images(
    images: List[UploadFile] = File(...),
    services: Services = Depends(get_services),
):
    if len(images) < services.min_images:
        raise ValidationError(f"at least {services.min_images} images are required, got {len(images)}")

    # Every file is checked before any is written.
    checked = []
    for image in images:
        if image.content_type not in IMAGE_TYPES:
            raise ValidationError(f"unsupported image type {image.content_type} for {image.filename}")
        data = await image.read()
        _check_image(data, image.filename or "image")
        checked.append((image.filename or "", data))

    stored: List[UploadedImage] = []
    for filename, data in checked:
        suffix = Path(filename).suffix.lower()
        path = upload_path(services.uploads, f"{uuid.uuid4()}{suffix}")
        await asyncio.to_thread(path.write_bytes, data)
        stored.append(UploadedImage(filename=path.name, path=str(path)))

    logger.info("Stored %d training images", len(stored))
    return UploadImagesResponse(files=stored)


@app.post("/api/start-training")
async def start_training(body: StartTrainingRequest, services: Services = Depends(get_services)):
    return await services.launcher.start_training(body)


@app.get("/api/check-training-status/{job_id}")
async def check_training_status(job_id: str, services: Services = Depends(get_services)):
    return await services.poller.check_status(job_id)


@app.post("/api/reset-training/{job_id}")
async def reset_training(job_id: str, services: Services = Depends(get_services)):
    return {"id": job_id, "reset": await services.poller.reset(job_id)}


@app.post("/api/generate-image", response_model=GenerateImageResponse)
async def generate_image(body: GenerateImageRequest, services: Services = Depends(get_services)):
    return await generate_preview(
        services.jobs, services.downloads, services.generation_model, body.prompt, body.extra_lora
    )
