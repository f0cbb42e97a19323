import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

from .models import BlobUploadResult


class MemoryProcessedStore:
    """Processed markers kept for the life of the process."""

    def __init__(self) -> None:
        self._records: Dict[str, BlobUploadResult] = {}

    async def get(self, job_id: str) -> Optional[BlobUploadResult]:
        return self._records.get(job_id)

    async def mark_processed(self, job_id: str, result: BlobUploadResult) -> None:
        self._records[job_id] = result

    async def reset(self, job_id: str) -> bool:
        return self._records.pop(job_id, None) is not None


class RedisProcessedStore:
    """Processed markers in a ``jobs:<id>`` hash so they survive restarts."""

    def __init__(self, rdb: redis.Redis):
        self.rdb = rdb

    @staticmethod
    def _key(job_id: str) -> str:
        return f"jobs:{job_id}"

    async def get(self, job_id: str) -> Optional[BlobUploadResult]:
        fields = await self.rdb.hgetall(self._key(job_id))
        decoded = {_text(k): _text(v) for k, v in fields.items()}
        if decoded.get("processed") != "1":
            return None
        return BlobUploadResult(url=decoded["url"], key=decoded["key"], size=int(decoded.get("size", "0")))

    async def mark_processed(self, job_id: str, result: BlobUploadResult) -> None:
        await self.rdb.hset(
            self._key(job_id),
            mapping={"processed": "1", "url": result.url, "key": result.key, "size": str(result.size)},
        )

    async def reset(self, job_id: str) -> bool:
        return bool(await self.rdb.delete(self._key(job_id)))


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class JobLocks:
    """One ``asyncio.Lock`` per job id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._locks

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._users[job_id] = self._users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[job_id] -= 1
            if self._users[job_id] == 0:
                del self._users[job_id]
                del self._locks[job_id]
