"""
Remote media download.

Streams the source audio to a local file under a bounded timeout. Network
conditions (timeouts, resets, refused connections) are retried a fixed
number of times; an HTTP error status is final on the first attempt.
"""

import asyncio
import logging
import os
import uuid
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from src.transcription.errors import DownloadError
from src.transcription.temp_files import cleanup_files

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp3"


def _is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


def _extension_from_url(url: str) -> str:
    """Return the file extension of the URL path, or ``.mp3``."""
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    if not ext or len(ext) > 6 or not ext[1:].isalnum():
        return DEFAULT_EXTENSION
    return ext


async def _stream_to_file(
    url: str,
    output_path: str,
    timeout: float,
    chunk_bytes: int,
    transport: Optional[httpx.AsyncBaseTransport],
) -> int:
    """Fetch ``url`` into ``output_path`` and return the number of bytes."""
    total_bytes = 0
    async with httpx.AsyncClient(
        timeout=timeout, transport=transport, follow_redirects=True
    ) as client:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            with open(output_path, "wb") as out_file:
                async for chunk in response.aiter_bytes(chunk_bytes):
                    out_file.write(chunk)
                    total_bytes += len(chunk)
    return total_bytes


async def download_audio(
    url: str,
    dest_dir: str,
    *,
    timeout: float = 300,
    max_retries: int = 3,
    retry_delay: float = 2,
    chunk_bytes: int = 1024 * 1024,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """
    Download ``url`` into ``dest_dir`` and return the local path.

    The whole transfer of one attempt, headers and body, must finish within
    ``timeout`` seconds. The caller owns the returned file.

    Raises:
        DownloadError: on a non-success HTTP status, or once ``max_retries``
            attempts have failed on network conditions.
    """
    os.makedirs(dest_dir, exist_ok=True)
    output_path = os.path.join(
        dest_dir, f"input_{uuid.uuid4().hex}{_extension_from_url(url)}"
    )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries),
        wait=wait_fixed(retry_delay),
        retry=retry_if_exception(_is_network_error),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                logger.info(
                    "Downloading %s (attempt %d/%d)",
                    url, attempt.retry_state.attempt_number, max_retries,
                )
                try:
                    size = await asyncio.wait_for(
                        _stream_to_file(
                            url, output_path, timeout, chunk_bytes, transport
                        ),
                        timeout=timeout,
                    )
                except Exception:
                    cleanup_files([output_path])
                    raise
    except httpx.HTTPStatusError as exc:
        logger.error(
            "Download of %s failed with HTTP %d", url, exc.response.status_code
        )
        raise DownloadError(
            f"Download failed with HTTP {exc.response.status_code}",
            last_error=exc,
        ) from exc
    except (httpx.TransportError, asyncio.TimeoutError) as exc:
        logger.error("Download of %s failed after %d attempts", url, max_retries)
        raise DownloadError(
            f"Download failed after {max_retries} attempts: {exc!r}",
            last_error=exc,
        ) from exc
    except (httpx.HTTPError, OSError) as exc:
        logger.error("Download of %s failed: %r", url, exc)
        raise DownloadError(f"Download failed: {exc!r}", last_error=exc) from exc

    logger.info("Downloaded %s to %s (%d bytes)", url, output_path, size)
    return output_path
