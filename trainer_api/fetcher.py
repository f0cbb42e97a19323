import asyncio
import logging
from pathlib import Path

import httpx

from .errors import TransportError, ValidationError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


async def fetch_to_file(client: httpx.AsyncClient, url: str, dest: Path, chunk_size: int = CHUNK_SIZE) -> Path:
    """Stream ``url`` into ``dest`` one chunk at a time.

    The next chunk is not read until the previous one is on disk, so memory
    use does not depend on the size of the body. A partially written file is
    left behind on failure and local disk errors propagate unchanged.
    """
    if not url:
        raise ValidationError("download url is empty")

    written = 0
    try:
        async with client.stream("GET", url, follow_redirects=True) as response:
            if not response.is_success:
                raise TransportError(
                    f"GET {url} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            with dest.open("wb") as fh:
                async for chunk in response.aiter_bytes(chunk_size):
                    await asyncio.to_thread(fh.write, chunk)
                    written += len(chunk)
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
        raise TransportError(f"GET {url} failed: {exc}") from exc

    logger.info("Downloaded %d bytes to %s", written, dest)
    return dest
