"""
End-to-end transcription of one document's audio.

Download → decide → direct transcription, or segmentation → batched
segment transcription → reassembly → final status. Every step reports
progress through the injected reporter, and the run's working directory
is removed on every exit path.
"""

import asyncio
import logging
import os
import re
import shutil
from types import SimpleNamespace
from typing import Awaitable, Callable, List, Optional

from configs.config import get_config
from src.transcription.client import WhisperClient
from src.transcription.errors import (
    DownloadError,
    InsufficientTranscriptError,
    ProbeError,
    ReassemblyError,
    TranscriptionError,
    TranscriptionPipelineError,
)
from src.transcription.fetcher import download_audio
from src.transcription.media import probe_duration, split_audio
from src.transcription.models import Segment, SegmentResult
from src.transcription.reporter import (
    MongoStatusReporter,
    ProgressTracker,
    StatusReporter,
)
from src.transcription.temp_files import create_work_dir, remove_work_dir

logger = logging.getLogger(__name__)

# Progress milestones (percent)
PROGRESS_PREPARING = 0
PROGRESS_DOWNLOADING = 10
PROGRESS_ANALYZING = 20
PROGRESS_DIRECT = 30
PROGRESS_FALLBACK = 35
PROGRESS_SEGMENTING = 40
PROGRESS_SEGMENTS_START = 45
PROGRESS_SEGMENTS_SPAN = 50

_REPEATED_WHITESPACE = re.compile(r"\s+")
_REPEATED_PUNCTUATION = re.compile(r"([.,?!])(?:\s+\1)+")


def segment_placeholder(index: int) -> str:
    """Marker left in the transcript for a segment that could not be transcribed."""
    return f"[Segment {index + 1} not transcribed]"


def reassemble_transcript(results: List[SegmentResult]) -> str:
    """
    Join segment texts in index order into one transcript.

    Raises:
        ReassemblyError: if no segment succeeded.
    """
    if not any(result.succeeded for result in results):
        raise ReassemblyError("No segment could be transcribed")

    ordered = sorted(results, key=lambda result: result.index)
    combined = " ".join(result.text for result in ordered)
    combined = _REPEATED_WHITESPACE.sub(" ", combined)
    combined = _REPEATED_PUNCTUATION.sub(r"\1", combined)
    return combined.strip()


class TranscriptionPipeline:
    """Runs one transcription job at a time for a given document."""

    def __init__(
        self,
        client: WhisperClient,
        reporter: StatusReporter,
        *,
        settings: Optional[SimpleNamespace] = None,
        fetch: Callable[..., Awaitable[str]] = download_audio,
        probe: Callable[..., Awaitable[float]] = probe_duration,
        split: Callable[..., Awaitable[List[Segment]]] = split_audio,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._reporter = reporter
        self._cfg = settings or get_config()
        self._fetch = fetch
        self._probe = probe
        self._split = split
        self._sleep = sleep

    # ── Entry points ─────────────────────────────────────────────────────

    async def run(
        self,
        document_id: str,
        audio_url: str,
        *,
        language: Optional[str] = None,
        force_chunked: bool = False,
    ) -> str:
        """
        Transcribe the audio at ``audio_url`` and persist the result.

        Returns the transcript. On failure the status record is set to
        ``failed`` with the user-facing message and the error is re-raised.
        """
        cfg = self._cfg

        async def download(work_dir: str, tracker: ProgressTracker) -> str:
            await tracker.update("Downloading audio file", PROGRESS_DOWNLOADING)
            return await self._fetch(
                audio_url,
                work_dir,
                timeout=cfg.DOWNLOAD_TIMEOUT_SECONDS,
                max_retries=cfg.DOWNLOAD_MAX_RETRIES,
                retry_delay=cfg.DOWNLOAD_RETRY_DELAY_SECONDS,
                chunk_bytes=cfg.DOWNLOAD_CHUNK_BYTES,
                sleep=self._sleep,
            )

        return await self._run(document_id, download, language, force_chunked)

    async def run_file(
        self,
        document_id: str,
        audio_path: str,
        *,
        language: Optional[str] = None,
        force_chunked: bool = False,
    ) -> str:
        """
        Transcribe a local file, such as an upload, instead of a URL.

        The file is moved into the run's working directory, so it is gone
        once the run ends whatever the outcome.
        """

        async def take_over(work_dir: str, tracker: ProgressTracker) -> str:
            await tracker.update("Receiving audio file", PROGRESS_DOWNLOADING)
            if not os.path.isfile(audio_path):
                raise DownloadError(f"Uploaded file is missing: {audio_path}")
            target = os.path.join(work_dir, "input" + os.path.splitext(audio_path)[1])
            await asyncio.to_thread(shutil.move, audio_path, target)
            return target

        return await self._run(document_id, take_over, language, force_chunked)

    async def _run(
        self,
        document_id: str,
        acquire: Callable[[str, ProgressTracker], Awaitable[str]],
        language: Optional[str],
        force_chunked: bool,
    ) -> str:
        cfg = self._cfg
        language = language or cfg.TRANSCRIPTION_LANGUAGE
        tracker = ProgressTracker(self._reporter, document_id)
        work_dir = None

        logger.info(
            "Starting transcription for document %s (force_chunked=%s)",
            document_id, force_chunked,
        )
        try:
            await tracker.update("Preparing audio file", PROGRESS_PREPARING)
            work_dir = create_work_dir(cfg.TEMP_DIR)
            input_path = await acquire(work_dir, tracker)

            size = os.path.getsize(input_path)
            await tracker.update("Analyzing audio file", PROGRESS_ANALYZING)

            transcript = None
            if size <= cfg.MAX_DIRECT_SIZE_BYTES and not force_chunked:
                transcript = await self._transcribe_direct(
                    input_path, language, tracker
                )
            else:
                logger.info(
                    "Document %s: %d bytes, force_chunked=%s, using segments",
                    document_id, size, force_chunked,
                )

            if transcript is None:
                transcript = await self._transcribe_chunked(
                    input_path, work_dir, language, tracker
                )

            self._check_transcript(transcript)
            await tracker.succeed(transcript)
            logger.info(
                "Document %s transcribed: %d characters",
                document_id, len(transcript),
            )
            return transcript

        except TranscriptionPipelineError as exc:
            logger.error("Transcription of document %s failed: %s", document_id, exc)
            await tracker.fail(cfg.FAILURE_MESSAGE)
            raise
        except Exception as exc:
            logger.error(
                "Unexpected error transcribing document %s: %s",
                document_id, exc, exc_info=True,
            )
            await tracker.fail(cfg.FAILURE_MESSAGE)
            raise
        finally:
            remove_work_dir(work_dir)

    # ── Direct path ──────────────────────────────────────────────────────

    async def _transcribe_direct(
        self, input_path: str, language: str, tracker: ProgressTracker
    ) -> Optional[str]:
        """Send the whole file once; ``None`` means fall back to segments."""
        await tracker.update("Transcribing audio", PROGRESS_DIRECT)
        try:
            return await self._client.transcribe(input_path, language)
        except Exception as exc:
            logger.warning(
                "Direct transcription failed, retrying with segments: %r", exc,
                exc_info=not isinstance(exc, TranscriptionError),
            )
            await tracker.update(
                "Direct transcription failed, retrying with segments",
                PROGRESS_FALLBACK,
            )
            return None

    # ── Chunked path ─────────────────────────────────────────────────────

    async def _transcribe_chunked(
        self,
        input_path: str,
        work_dir: str,
        language: str,
        tracker: ProgressTracker,
    ) -> str:
        cfg = self._cfg
        await tracker.update(
            "Splitting audio file into segments", PROGRESS_SEGMENTING
        )

        try:
            duration = await self._probe(
                input_path, timeout=cfg.PROBE_TIMEOUT_SECONDS
            )
        except ProbeError as exc:
            duration = cfg.DEFAULT_AUDIO_DURATION_SECONDS
            logger.warning(
                "Could not probe duration (%s); assuming %s seconds",
                exc, duration,
            )

        segments = await self._split(
            input_path,
            os.path.join(work_dir, "segments"),
            duration,
            segment_duration=cfg.SEGMENT_DURATION_SECONDS,
            max_segments=cfg.MAX_SEGMENTS,
            quality=cfg.SEGMENT_AUDIO_QUALITY,
            timeout=cfg.SEGMENT_TIMEOUT_SECONDS,
            max_retries=cfg.SEGMENT_MAX_RETRIES,
            retry_delay=cfg.SEGMENT_RETRY_DELAY_SECONDS,
            batch_size=cfg.SEGMENT_EXTRACTION_BATCH_SIZE,
            sleep=self._sleep,
        )

        results = await self._transcribe_with_passes(segments, language, tracker)
        await tracker.update("Assembling transcript", 99)
        return reassemble_transcript(results)

    async def _transcribe_with_passes(
        self,
        segments: List[Segment],
        language: str,
        tracker: ProgressTracker,
    ) -> List[SegmentResult]:
        """Repeat full passes over the segments while every segment fails."""
        max_passes = max(1, self._cfg.PIPELINE_MAX_PASSES)
        results: List[SegmentResult] = []

        for pass_number in range(1, max_passes + 1):
            # The last pass gets twice the request timeout
            timeout = None
            if max_passes > 1 and pass_number == max_passes:
                timeout = self._client.timeout * 2

            results = await self._transcribe_pass(
                segments, language, tracker, pass_number, max_passes, timeout
            )
            succeeded = sum(1 for result in results if result.succeeded)
            if succeeded:
                logger.info(
                    "Pass %d: %d/%d segments transcribed",
                    pass_number, succeeded, len(results),
                )
                return results

            logger.warning(
                "Pass %d/%d: no segment transcribed", pass_number, max_passes
            )
            if pass_number < max_passes:
                await self._sleep(self._cfg.TRANSCRIPTION_RETRY_DELAY_SECONDS)

        return results

    async def _transcribe_pass(
        self,
        segments: List[Segment],
        language: str,
        tracker: ProgressTracker,
        pass_number: int,
        max_passes: int,
        timeout: Optional[float],
    ) -> List[SegmentResult]:
        batch_size = max(1, self._cfg.TRANSCRIPTION_BATCH_SIZE)
        total = len(segments)
        results: List[SegmentResult] = []

        for start in range(0, total, batch_size):
            batch = segments[start:start + batch_size]
            message = (
                f"Transcribing segments {start + 1}-{start + len(batch)}/{total}"
            )
            if pass_number > 1:
                message += f", pass {pass_number}/{max_passes}"
            percent = PROGRESS_SEGMENTS_START + (start * PROGRESS_SEGMENTS_SPAN) // total
            await tracker.update(message, percent)

            results.extend(
                await asyncio.gather(
                    *(
                        self._transcribe_segment(segment, language, timeout)
                        for segment in batch
                    )
                )
            )

            if start + batch_size < total:
                await self._sleep(self._cfg.BATCH_PAUSE_SECONDS)

        return results

    async def _transcribe_segment(
        self, segment: Segment, language: str, timeout: Optional[float]
    ) -> SegmentResult:
        try:
            text = await self._client.transcribe(
                segment.local_path, language, timeout=timeout
            )
            return SegmentResult(index=segment.index, text=text.strip(), succeeded=True)
        except Exception as exc:
            logger.error(
                "Segment %d not transcribed: %r", segment.index + 1, exc,
                exc_info=not isinstance(exc, TranscriptionError),
            )
            return SegmentResult(
                index=segment.index,
                text=segment_placeholder(segment.index),
                succeeded=False,
            )

    # ── Finalizing ───────────────────────────────────────────────────────

    def _check_transcript(self, transcript: str) -> None:
        minimum = self._cfg.MIN_TRANSCRIPT_LENGTH
        if len(transcript.strip()) < minimum:
            raise InsufficientTranscriptError(
                f"Transcript has {len(transcript.strip())} characters "
                f"(minimum {minimum})"
            )


def create_pipeline(
    reporter: Optional[StatusReporter] = None,
    settings: Optional[SimpleNamespace] = None,
) -> TranscriptionPipeline:
    """Build a pipeline wired to the hosted service and MongoDB status records."""
    cfg = settings or get_config()
    client = WhisperClient(
        cfg.OPENAI_API_KEY,
        api_url=cfg.WHISPER_API_URL,
        model=cfg.WHISPER_MODEL,
        timeout=cfg.TRANSCRIPTION_TIMEOUT_SECONDS,
        max_retries=cfg.TRANSCRIPTION_MAX_RETRIES,
        retry_delay=cfg.TRANSCRIPTION_RETRY_DELAY_SECONDS,
        max_payload_bytes=cfg.MAX_DIRECT_SIZE_BYTES,
    )
    return TranscriptionPipeline(
        client, reporter or MongoStatusReporter(), settings=cfg
    )
