import asyncio
import io
import logging
import os
from typing import BinaryIO, Callable, Dict, List, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import UploadError
from .models import BlobUploadResult
from .settings import MIB, Settings

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, memoryview, BinaryIO]
ProgressCallback = Callable[[float], None]

DEFAULT_PART_SIZE = 5 * MIB
DEFAULT_QUEUE_SIZE = 4


def build_s3_client(settings: Settings):
    config = Config(
        signature_version="s3v4",
        s3={"addressing_style": "path" if settings.s3_force_path_style else "virtual"},
    )
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        config=config,
    )


def _as_stream(source: Source) -> BinaryIO:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(source)
    return source


def _source_size(stream: BinaryIO) -> Optional[int]:
    try:
        return os.fstat(stream.fileno()).st_size - stream.tell()
    except (AttributeError, OSError, io.UnsupportedOperation):
        pass
    if stream.seekable():
        pos = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(pos)
        return end - pos
    return None


class S3BlobStore:
    """Whole-object uploads to a bucket configured for public reads."""

    def __init__(self, client, bucket: str, region: Optional[str] = None, public_base_url: Optional[str] = None):
        self.client = client
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    async def put(self, source: Source, key: str, content_type: str = "application/octet-stream") -> BlobUploadResult:
        stream = _as_stream(source)
        size = _source_size(stream)
        logger.info("Uploading %s to s3://%s", key, self.bucket)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=stream,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"upload of {key} failed: {exc}") from exc
        return self._result(key, size or 0)

    def _result(self, key: str, size: int) -> BlobUploadResult:
        url = self.public_url(key)
        logger.info("Upload finished: %s", url)
        return BlobUploadResult(url=url, key=key, size=size)


class MultipartBlobStore(S3BlobStore):
    """Uploads in fixed-size parts with a bounded number of parts in flight.

    At most ``queue_size`` parts are read ahead of the ones that finished, so
    memory stays within ``queue_size * part_size`` whatever the source size.
    """

    def __init__(
        self,
        client,
        bucket: str,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
        part_size: int = DEFAULT_PART_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        super().__init__(client, bucket, region, public_base_url)
        if part_size < DEFAULT_PART_SIZE:
            raise ValueError("part_size must be at least 5 MiB")
        if queue_size < 1:
            raise ValueError("queue_size must be positive")
        self.part_size = part_size
        self.queue_size = queue_size

    async def put(
        self,
        source: Source,
        key: str,
        content_type: str = "application/octet-stream",
        on_progress: Optional[ProgressCallback] = None,
    ) -> BlobUploadResult:
        stream = _as_stream(source)
        progress = _Progress(key, _source_size(stream), on_progress)

        first = await asyncio.to_thread(stream.read, self.part_size)
        if len(first) < self.part_size:
            # Fits in one part; a plain PUT avoids the multipart round trips.
            await self._put_single(key, first, content_type)
            progress.advance(len(first))
            return self._result(key, len(first))

        upload_id = await self._create(key, content_type)
        size = await self._upload_parts(key, upload_id, stream, first, progress)
        return self._result(key, size)

    async def _put_single(self, key: str, body: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object, Bucket=self.bucket, Key=key, Body=body, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"upload of {key} failed: {exc}") from exc

    async def _create(self, key: str, content_type: str) -> str:
        try:
            response = await asyncio.to_thread(
                self.client.create_multipart_upload, Bucket=self.bucket, Key=key, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"could not start multipart upload of {key}: {exc}") from exc
        return response["UploadId"]

    async def _upload_parts(self, key: str, upload_id: str, stream: BinaryIO, first: bytes, progress: "_Progress") -> int:
        slots = asyncio.Semaphore(self.queue_size)
        tasks: List[asyncio.Task] = []
        total = 0
        try:
            chunk, number = first, 1
            while chunk:
                await slots.acquire()
                _raise_first_failure(tasks)
                tasks.append(asyncio.create_task(self._upload_part(key, upload_id, number, chunk, slots, progress)))
                total += len(chunk)
                number += 1
                chunk = await asyncio.to_thread(stream.read, self.part_size)

            parts = await asyncio.gather(*tasks)
            await asyncio.to_thread(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": list(parts)},
            )
        except BaseException as exc:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._abort(key, upload_id)
            if isinstance(exc, (BotoCoreError, ClientError, OSError)):
                raise UploadError(f"multipart upload of {key} failed: {exc}") from exc
            raise
        return total

    async def _upload_part(
        self, key: str, upload_id: str, number: int, body: bytes, slots: asyncio.Semaphore, progress: "_Progress"
    ) -> Dict[str, object]:
        try:
            response = await asyncio.to_thread(
                self.client.upload_part,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=number,
                Body=body,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"part {number} of {key} failed: {exc}") from exc
        finally:
            slots.release()
        progress.advance(len(body))
        return {"PartNumber": number, "ETag": response["ETag"]}

    async def _abort(self, key: str, upload_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id
            )
        except (BotoCoreError, ClientError):
            logger.exception("Could not abort multipart upload %s for %s", upload_id, key)


def _raise_first_failure(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()


class _Progress:
    def __init__(self, key: str, total: Optional[int], callback: Optional[ProgressCallback]):
        self.key = key
        self.total = total
        self.loaded = 0
        self.callback = callback

    def advance(self, n: int) -> None:
        self.loaded += n
        if self.total is None:
            logger.info("Uploaded %d bytes of %s", self.loaded, self.key)
            return
        percentage = round(min(self.loaded / self.total, 1.0) * 100, 2) if self.total else 100.0
        logger.info("Upload progress for %s: %.2f%%", self.key, percentage)
        if self.callback is None:
            return
        try:
            self.callback(percentage)
        except Exception:
            logger.warning("Progress callback failed for %s", self.key, exc_info=True)
