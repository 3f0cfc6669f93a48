"""
Client for the hosted speech-to-text service (OpenAI audio transcriptions).

One call transcribes one local audio unit: the whole source file on the
direct path, or a single segment on the chunked path. Rate limiting,
server errors, timeouts and dropped connections are retried a fixed number
of times with a fixed delay; anything else is final.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from src.transcription.errors import SizeLimitExceeded, TranscriptionError

logger = logging.getLogger(__name__)


def is_retryable_status(status_code: int) -> bool:
    """Rate limiting and server-side failures are worth another attempt."""
    return status_code == 429 or status_code >= 500


def _is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, TranscriptionError) and exc.retryable


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or response.reason_phrase
    if isinstance(error, str):
        return error
    return response.reason_phrase


class WhisperClient:
    """Sends audio files to the transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = "https://api.openai.com/v1/audio/transcriptions",
        model: str = "whisper-1",
        timeout: float = 300,
        max_retries: int = 3,
        retry_delay: float = 2,
        max_payload_bytes: int = 25 * 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("An API key is required for the transcription service")
        self._api_key = api_key
        self._api_url = api_url
        self._model = model
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._max_payload_bytes = max_payload_bytes
        self._transport = transport
        self._sleep = sleep

    @property
    def timeout(self) -> float:
        return self._timeout

    def _check_payload(self, audio_path: str) -> int:
        if not os.path.exists(audio_path):
            raise TranscriptionError(f"Audio file does not exist: {audio_path}")
        size = os.path.getsize(audio_path)
        if size == 0:
            raise TranscriptionError(f"Audio file is empty: {audio_path}")
        if size > self._max_payload_bytes:
            raise SizeLimitExceeded(size, self._max_payload_bytes)
        return size

    async def _post(
        self, audio_path: str, language: Optional[str], timeout: float
    ) -> str:
        data = {"model": self._model}
        if language:
            data["language"] = language

        async with httpx.AsyncClient(
            timeout=timeout, transport=self._transport
        ) as client:
            with open(audio_path, "rb") as audio_file:
                response = await client.post(
                    self._api_url,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    data=data,
                    files={"file": (os.path.basename(audio_path), audio_file)},
                )

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as exc:
                raise TranscriptionError(
                    "Transcription service returned a malformed response",
                    status_code=response.status_code,
                    retryable=True,
                ) from exc
            return (payload.get("text") if isinstance(payload, dict) else None) or ""

        message = _error_message(response)
        raise TranscriptionError(
            f"Transcription service error {response.status_code}: {message}",
            status_code=response.status_code,
            retryable=is_retryable_status(response.status_code),
        )

    async def _attempt(
        self, audio_path: str, language: Optional[str], timeout: float
    ) -> str:
        """One bounded request; every failure comes out as ``TranscriptionError``."""
        try:
            return await asyncio.wait_for(
                self._post(audio_path, language, timeout), timeout=timeout
            )
        except TranscriptionError:
            raise
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise TranscriptionError(
                f"Transcription request timed out after {timeout}s",
                retryable=True,
            ) from exc
        except (httpx.TransportError, httpx.DecodingError) as exc:
            raise TranscriptionError(
                f"Connection to transcription service failed: {exc!r}",
                retryable=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(
                f"Transcription request failed: {exc!r}"
            ) from exc
        except OSError as exc:
            raise TranscriptionError(
                f"Could not read audio file {audio_path}: {exc}"
            ) from exc

    async def transcribe(
        self,
        audio_path: str,
        language: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Transcribe one audio file and return its text.

        ``timeout`` overrides the per-attempt request timeout.

        Raises:
            SizeLimitExceeded: the file is over the payload limit (not retried).
            TranscriptionError: the request was rejected, or every attempt
                failed on a retryable condition.
        """
        size = self._check_payload(audio_path)
        timeout = timeout or self._timeout
        name = os.path.basename(audio_path)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_fixed(self._retry_delay),
            retry=retry_if_exception(_is_retryable_error),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    logger.info(
                        "Transcribing %s (%d bytes), attempt %d/%d",
                        name, size, attempt.retry_state.attempt_number,
                        self._max_retries,
                    )
                    text = await self._attempt(audio_path, language, timeout)
        except TranscriptionError as exc:
            if not exc.retryable:
                logger.error("Transcription of %s rejected: %s", name, exc)
                raise
            raise TranscriptionError(
                f"Transcription failed after {self._max_retries} attempts: {exc}",
                status_code=exc.status_code,
            ) from exc

        logger.info("Transcribed %s: %d characters", name, len(text))
        return text
