import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

import httpx

from . import archive
from .blobstore import MultipartBlobStore
from .errors import PipelineError, StageTimeoutError, TrainerError
from .fetcher import fetch_to_file
from .models import BlobUploadResult
from .storage import job_archive_path, job_extract_dir, remove_job_dir

logger = logging.getLogger(__name__)

T = TypeVar("T")

WEIGHTS_CONTENT_TYPE = "application/octet-stream"


def weights_key(job_id: str) -> str:
    return f"models/{job_id}/lora.safetensors"


class WeightsPipeline:
    """Turns a finished training's output archive into a public weights file.

    Every call runs download, extract, locate and upload from scratch. The
    job's work directory is kept when a stage fails; callers remove it with
    :meth:`cleanup` once the result has been recorded.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: MultipartBlobStore,
        work_dir: Path,
        suffix: str = archive.WEIGHTS_SUFFIX,
        fetch_timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
    ):
        self.http = http
        self.store = store
        self.work_dir = work_dir
        self.suffix = suffix
        self.fetch_timeout = fetch_timeout
        self.upload_timeout = upload_timeout

    async def process_weights(self, archive_url: str, job_id: str) -> BlobUploadResult:
        archive_path = await self._stage("prepare", job_id, asyncio.to_thread(job_archive_path, self.work_dir, job_id))
        extract_dir = job_extract_dir(self.work_dir, job_id)

        logger.info("Downloading weights for job %s", job_id)
        await self._stage("download", job_id, fetch_to_file(self.http, archive_url, archive_path), self.fetch_timeout)

        logger.info("Extracting %s", archive_path)
        await self._stage("extract", job_id, asyncio.to_thread(archive.extract, archive_path, extract_dir))

        found = await self._stage("locate", job_id, asyncio.to_thread(archive.locate, extract_dir, self.suffix))
        try:
            weights_path = archive.require_single(found, self.suffix)
        except TrainerError as exc:
            raise PipelineError("locate", job_id, exc) from exc

        logger.info("Found %s, uploading", weights_path.name)
        return await self._stage("upload", job_id, self._upload(weights_path, job_id), self.upload_timeout)

    async def _upload(self, weights_path: Path, job_id: str) -> BlobUploadResult:
        # Weights files are moderate in size, so they are sent from memory.
        data = await asyncio.to_thread(weights_path.read_bytes)
        return await self.store.put(data, weights_key(job_id), WEIGHTS_CONTENT_TYPE)

    def cleanup(self, job_id: str) -> None:
        remove_job_dir(self.work_dir, job_id)

    async def _stage(self, stage: str, job_id: str, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        try:
            if timeout:
                return await asyncio.wait_for(aw, timeout)
            return await aw
        except asyncio.TimeoutError as exc:
            raise PipelineError(stage, job_id, StageTimeoutError(f"timed out after {timeout:.0f}s")) from exc
        except (TrainerError, OSError) as exc:
            raise PipelineError(stage, job_id, exc) from exc
