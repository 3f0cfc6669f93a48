"""
Audio helpers built on ffprobe / ffmpeg.

``probe_duration`` reads the length of a local media file and
``split_audio`` cuts it into a bounded number of fixed-length MP3
segments. Both shell out with ``subprocess.run`` under a timeout and are
dispatched to a worker thread so the event loop keeps serving requests.
"""

import asyncio
import logging
import math
import os
import subprocess
from typing import Awaitable, Callable, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from src.transcription.errors import ProbeError, SegmentationError
from src.transcription.models import Segment
from src.transcription.temp_files import cleanup_files

logger = logging.getLogger(__name__)

# A segment attempt that ends in one of these is retried
_EXTRACTION_ERRORS = (subprocess.SubprocessError, OSError, SegmentationError)


# ── Probe ────────────────────────────────────────────────────────────────


def _run_ffprobe(audio_path: str, timeout: float) -> float:
    result = subprocess.run(
        [
            "ffprobe", "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            audio_path,
        ],
        capture_output=True,
        text=True,
        check=True,
        timeout=timeout,
    )
    return float(result.stdout.strip())


async def probe_duration(audio_path: str, timeout: float = 60) -> float:
    """
    Return the duration of ``audio_path`` in seconds.

    Raises:
        ProbeError: if the file is missing, ffprobe fails or times out, or
            the reported duration is not a positive number.
    """
    if not os.path.exists(audio_path):
        raise ProbeError(f"File does not exist: {audio_path}")

    try:
        duration = await asyncio.to_thread(_run_ffprobe, audio_path, timeout)
    except subprocess.TimeoutExpired as exc:
        raise ProbeError(f"ffprobe timed out after {timeout}s") from exc
    except subprocess.CalledProcessError as exc:
        raise ProbeError(
            f"ffprobe failed: {(exc.stderr or '').strip() or exc}"
        ) from exc
    except (OSError, ValueError) as exc:
        raise ProbeError(f"Could not read duration: {exc}") from exc

    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError(f"Invalid duration reported: {duration}")

    logger.info("Audio duration: %.2f seconds", duration)
    return duration


# ── Segmentation ─────────────────────────────────────────────────────────


def plan_segments(
    total_duration: float, segment_duration: float, max_segments: int
) -> Tuple[int, float]:
    """
    Return ``(segment_count, segment_duration)`` covering ``total_duration``.

    When more than ``max_segments`` would be needed, the count is capped and
    each segment is widened so the capped set still covers the whole file.
    """
    if total_duration <= 0 or segment_duration <= 0 or max_segments <= 0:
        raise ValueError("durations and max_segments must be positive")

    count = math.ceil(total_duration / segment_duration)
    if count > max_segments:
        segment_duration = math.ceil(total_duration / max_segments)
        count = max_segments
        logger.info(
            "Capped at %d segments of %s seconds", count, segment_duration
        )
    return count, segment_duration


def _run_ffmpeg_segment(
    input_path: str,
    output_path: str,
    start: float,
    duration: float,
    quality: int,
    timeout: float,
) -> None:
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-ss", f"{start:.3f}",
            "-t", f"{duration:.3f}",
            "-i", input_path,
            "-vn",
            "-acodec", "libmp3lame",
            "-q:a", str(quality),
            output_path,
        ],
        check=True,
        capture_output=True,
        timeout=timeout,
    )


async def _extract_once(
    input_path: str, segment: Segment, quality: int, timeout: float
) -> None:
    await asyncio.to_thread(
        _run_ffmpeg_segment,
        input_path,
        segment.local_path,
        segment.start_offset_seconds,
        segment.duration_seconds,
        quality,
        timeout,
    )
    if not os.path.exists(segment.local_path) or os.path.getsize(segment.local_path) == 0:
        raise SegmentationError(f"Segment {segment.index + 1} produced an empty file")


def _describe_failure(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, subprocess.TimeoutExpired):
        return f"timed out after {timeout}s"
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return (stderr or str(exc)).strip()[-500:]


async def extract_segment(
    input_path: str,
    segment: Segment,
    *,
    quality: int = 3,
    timeout: float = 120,
    max_retries: int = 3,
    retry_delay: float = 2,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Optional[Segment]:
    """Extract one segment, retrying; return it, or ``None`` if every attempt failed."""
    label = f"{segment.index + 1}"
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries),
        wait=wait_fixed(retry_delay),
        retry=retry_if_exception_type(_EXTRACTION_ERRORS),
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                try:
                    await _extract_once(input_path, segment, quality, timeout)
                except _EXTRACTION_ERRORS as exc:
                    logger.warning(
                        "Segment %s extraction failed (attempt %d/%d): %s",
                        label, attempt.retry_state.attempt_number, max_retries,
                        _describe_failure(exc, timeout),
                    )
                    cleanup_files([segment.local_path])
                    raise
    except _EXTRACTION_ERRORS:
        logger.error(
            "Segment %s could not be extracted after %d attempts", label, max_retries
        )
        return None

    logger.info("Segment %s created: %s", label, segment.local_path)
    return segment


async def split_audio(
    input_path: str,
    output_dir: str,
    total_duration: float,
    *,
    segment_duration: float = 45,
    max_segments: int = 20,
    quality: int = 3,
    timeout: float = 120,
    max_retries: int = 3,
    retry_delay: float = 2,
    batch_size: int = 3,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[Segment]:
    """
    Split ``input_path`` into ordered segments written to ``output_dir``.

    Segments are extracted ``batch_size`` at a time. A segment whose
    extraction keeps failing is dropped from the result.

    Raises:
        SegmentationError: if the input is missing or no segment was produced.
    """
    if not os.path.exists(input_path):
        raise SegmentationError(f"Input file does not exist: {input_path}")

    count, segment_duration = plan_segments(
        total_duration, segment_duration, max_segments
    )
    logger.info(
        "Splitting %s (%.1fs) into %d segments of %ss",
        input_path, total_duration, count, segment_duration,
    )

    os.makedirs(output_dir, exist_ok=True)
    planned = [
        Segment(
            index=i,
            local_path=os.path.join(output_dir, f"segment_{i:03d}.mp3"),
            start_offset_seconds=i * segment_duration,
            duration_seconds=segment_duration,
        )
        for i in range(count)
    ]

    produced: List[Segment] = []
    for start in range(0, count, batch_size):
        batch = planned[start:start + batch_size]
        results = await asyncio.gather(
            *(
                extract_segment(
                    input_path,
                    segment,
                    quality=quality,
                    timeout=timeout,
                    max_retries=max_retries,
                    retry_delay=retry_delay,
                    sleep=sleep,
                )
                for segment in batch
            )
        )
        produced.extend(segment for segment in results if segment is not None)

    if not produced:
        raise SegmentationError("No segment could be created")

    logger.info("Segments created: %d/%d", len(produced), count)
    return produced
