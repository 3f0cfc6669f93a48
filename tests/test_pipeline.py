import asyncio
import os

import httpx
import pytest

from conftest import make_settings
from src.transcription.client import WhisperClient
from src.transcription.errors import (
    DownloadError,
    InsufficientTranscriptError,
    ProbeError,
    ReassemblyError,
    SegmentationError,
    TranscriptionError,
)
from src.transcription.models import ExtractionStatus, Segment, SegmentResult
from src.transcription.pipeline import (
    TranscriptionPipeline,
    reassemble_transcript,
    segment_placeholder,
)

LONG_TEXT = "Bonjour, ceci est une transcription de test."


class FakeClient:
    """Answers from a per-file script; an exception in the script is raised."""

    timeout = 300

    def __init__(self, script=None, default=LONG_TEXT):
        self.script = script or {}
        self.default = default
        self.calls = []

    async def transcribe(self, audio_path, language=None, *, timeout=None):
        name = os.path.basename(audio_path)
        self.calls.append((name, language, timeout))
        answer = self.script.get(name, self.default)
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


def _fetch(size):
    async def fetch(url, dest_dir, **kwargs):
        path = os.path.join(dest_dir, "input_test.mp3")
        with open(path, "wb") as handle:
            handle.write(b"\x00" * size)
        return path
    return fetch


async def _fixed_duration(path, timeout=None):
    return 100.0


def _split(count):
    async def split(input_path, output_dir, duration, **kwargs):
        os.makedirs(output_dir, exist_ok=True)
        segments = []
        for i in range(count):
            path = os.path.join(output_dir, f"segment_{i:03d}.mp3")
            with open(path, "wb") as handle:
                handle.write(b"\x01")
            segments.append(Segment(i, path, i * 45.0, 45.0))
        return segments
    return split


@pytest.fixture
def settings(tmp_path):
    return make_settings(
        TEMP_DIR=str(tmp_path / "temp"),
        MAX_DIRECT_SIZE_BYTES=1000,
        TRANSCRIPTION_BATCH_SIZE=3,
        BATCH_PAUSE_SECONDS=1,
        PIPELINE_MAX_PASSES=3,
        TRANSCRIPTION_RETRY_DELAY_SECONDS=2,
        MIN_TRANSCRIPT_LENGTH=10,
    )


def _pipeline(client, reporter, settings, sleep, *, size=100, segments=3, **kwargs):
    kwargs.setdefault("fetch", _fetch(size))
    kwargs.setdefault("probe", _fixed_duration)
    kwargs.setdefault("split", _split(segments))
    return TranscriptionPipeline(
        client, reporter, settings=settings, sleep=sleep, **kwargs
    )


def _leftovers(settings):
    if not os.path.isdir(settings.TEMP_DIR):
        return []
    return os.listdir(settings.TEMP_DIR)


# ── reassembly ───────────────────────────────────────────────────────────


def test_reassemble_orders_and_normalizes():
    results = [
        SegmentResult(2, "fin .", True),
        SegmentResult(0, "  Bonjour.", True),
        SegmentResult(1, ". suite,\n\n, encore", True),
    ]
    assert reassemble_transcript(results) == "Bonjour. suite, encore fin ."


def test_reassemble_collapses_repeated_question_and_exclamation():
    results = [SegmentResult(0, "Vraiment ? ?", True), SegmentResult(1, "! ! Oui", True)]
    assert reassemble_transcript(results) == "Vraiment ? ! Oui"


def test_reassemble_keeps_placeholders_in_place():
    results = [
        SegmentResult(0, "premier", True),
        SegmentResult(1, segment_placeholder(1), False),
        SegmentResult(2, "troisieme", True),
    ]
    assert reassemble_transcript(results) == (
        "premier [Segment 2 not transcribed] troisieme"
    )


def test_reassemble_all_failed():
    with pytest.raises(ReassemblyError):
        reassemble_transcript([SegmentResult(0, segment_placeholder(0), False)])


# ── direct path ──────────────────────────────────────────────────────────


def test_small_file_transcribed_directly(reporter, settings, sleep):
    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep, size=100)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == LONG_TEXT
    assert client.calls == [("input_test.mp3", "fr", None)]
    assert reporter.last == ("doc1", ExtractionStatus.SUCCESS, LONG_TEXT, 100)
    assert _leftovers(settings) == []


def test_language_override(reporter, settings, sleep):
    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep)
    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3", language="en"))
    assert client.calls[0][1] == "en"


def test_large_file_skips_direct(reporter, settings, sleep):
    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=2)

    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    names = [call[0] for call in client.calls]
    assert "input_test.mp3" not in names
    assert names == ["segment_000.mp3", "segment_001.mp3"]
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_force_chunked_skips_direct(reporter, settings, sleep):
    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep, size=10, segments=1)
    asyncio.run(
        pipeline.run("doc1", "https://media.test/a.mp3", force_chunked=True)
    )
    assert [call[0] for call in client.calls] == ["segment_000.mp3"]


def test_direct_failure_falls_back_to_segments(reporter, settings, sleep):
    client = FakeClient(
        script={"input_test.mp3": TranscriptionError("service down", 503)},
        default="morceau de texte",
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=100, segments=2)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == "morceau de texte morceau de texte"
    assert client.calls[0][0] == "input_test.mp3"
    messages = [call[2] for call in reporter.calls]
    assert any("retrying with segments" in m for m in messages)
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_unknown_duration_uses_default(reporter, settings, sleep):
    durations = []

    async def no_duration(path, timeout=None):
        raise ProbeError("no ffprobe")

    split = _split(1)

    async def recording_split(input_path, output_dir, duration, **kwargs):
        durations.append(duration)
        return await split(input_path, output_dir, duration, **kwargs)

    pipeline = _pipeline(
        FakeClient(), reporter, settings, sleep,
        size=5000, probe=no_duration, split=recording_split,
    )
    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))
    assert durations == [settings.DEFAULT_AUDIO_DURATION_SECONDS]


# ── chunked path ─────────────────────────────────────────────────────────


def test_partial_segment_failure_keeps_order(reporter, settings, sleep):
    client = FakeClient(
        script={
            "segment_000.mp3": "premier segment",
            "segment_001.mp3": TranscriptionError("failed", 500),
            "segment_002.mp3": "troisieme segment",
        }
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=3)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == (
        "premier segment [Segment 2 not transcribed] troisieme segment"
    )
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_batches_pause_between_them(reporter, settings, sleep):
    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=7)

    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert len(client.calls) == 7
    assert sleep.delays == [1, 1]


def test_all_segments_failing_runs_every_pass(reporter, settings, sleep):
    client = FakeClient(default=TranscriptionError("down", 503))
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=2)

    with pytest.raises(ReassemblyError):
        asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert len(client.calls) == 2 * 3
    # The final pass doubles the request timeout
    assert [call[2] for call in client.calls[-2:]] == [600, 600]
    assert reporter.last == (
        "doc1", ExtractionStatus.FAILED, settings.FAILURE_MESSAGE, 100
    )
    assert _leftovers(settings) == []


def test_second_pass_recovers(reporter, settings, sleep):
    client = FakeClient(
        script={"segment_000.mp3": [TranscriptionError("busy", 429), "enfin reussi"]}
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=1)

    assert asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3")) == "enfin reussi"
    assert len(client.calls) == 2


# ── failures and cleanup ─────────────────────────────────────────────────


def test_download_failure_marks_failed(reporter, settings, sleep):
    async def broken_fetch(url, dest_dir, **kwargs):
        raise DownloadError("HTTP 404")

    client = FakeClient()
    pipeline = _pipeline(client, reporter, settings, sleep, fetch=broken_fetch)

    with pytest.raises(DownloadError):
        asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert client.calls == []
    assert reporter.last[1] == ExtractionStatus.FAILED
    assert _leftovers(settings) == []


def test_segmentation_failure_marks_failed(reporter, settings, sleep):
    async def no_segments(input_path, output_dir, duration, **kwargs):
        raise SegmentationError("No segment could be created")

    pipeline = _pipeline(
        FakeClient(), reporter, settings, sleep, size=5000, split=no_segments
    )
    with pytest.raises(SegmentationError):
        asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))
    assert reporter.last[1] == ExtractionStatus.FAILED
    assert _leftovers(settings) == []


def test_short_transcript_is_a_failure(reporter, settings, sleep):
    pipeline = _pipeline(FakeClient(default="ok"), reporter, settings, sleep)

    with pytest.raises(InsufficientTranscriptError):
        asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert ExtractionStatus.SUCCESS not in reporter.statuses
    assert reporter.last[1] == ExtractionStatus.FAILED


def test_crash_before_reassembly_still_cleans_up(reporter, settings, sleep):
    split = _split(3)

    async def crashing_split(input_path, output_dir, duration, **kwargs):
        await split(input_path, output_dir, duration, **kwargs)
        raise RuntimeError("bug")

    pipeline = _pipeline(
        FakeClient(), reporter, settings, sleep, size=5000, split=crashing_split
    )

    with pytest.raises(RuntimeError):
        asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert reporter.last == (
        "doc1", ExtractionStatus.FAILED, settings.FAILURE_MESSAGE, 100
    )
    assert _leftovers(settings) == []


def test_unexpected_direct_error_falls_back(reporter, settings, sleep):
    client = FakeClient(
        script={"input_test.mp3": RuntimeError("bug")}, default="morceau de texte"
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=100, segments=1)

    assert asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3")) == (
        "morceau de texte"
    )
    assert [call[0] for call in client.calls] == ["input_test.mp3", "segment_000.mp3"]
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_unexpected_segment_error_leaves_placeholder(reporter, settings, sleep):
    client = FakeClient(
        script={
            "segment_000.mp3": "premier segment",
            "segment_001.mp3": RuntimeError("bug"),
            "segment_002.mp3": "troisieme segment",
        }
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=3)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == (
        "premier segment [Segment 2 not transcribed] troisieme segment"
    )
    assert _leftovers(settings) == []


def _real_client(broken_files, sleep):
    """A WhisperClient whose transport sends a corrupt gzip body for some files."""

    def handler(request):
        body = request.read()
        if any(name.encode() in body for name in broken_files):
            return httpx.Response(
                200,
                headers={"Content-Encoding": "gzip"},
                stream=httpx.ByteStream(b"definitely not gzip"),
            )
        return httpx.Response(200, json={"text": "texte du service"})

    return WhisperClient(
        "sk-test",
        transport=httpx.MockTransport(handler),
        max_retries=2,
        retry_delay=0,
        sleep=sleep,
    )


def test_corrupt_direct_response_falls_back(reporter, settings, sleep):
    client = _real_client({"input_test.mp3"}, sleep)
    pipeline = _pipeline(client, reporter, settings, sleep, size=100, segments=2)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == "texte du service texte du service"
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_corrupt_segment_response_leaves_placeholder(reporter, settings, sleep):
    client = _real_client({"segment_001.mp3"}, sleep)
    pipeline = _pipeline(client, reporter, settings, sleep, size=5000, segments=3)

    transcript = asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    assert transcript == (
        "texte du service [Segment 2 not transcribed] texte du service"
    )
    assert reporter.last[1] == ExtractionStatus.SUCCESS


# ── local files ──────────────────────────────────────────────────────────


def test_run_file_takes_over_the_upload(reporter, settings, sleep, tmp_path):
    upload = tmp_path / "upload.wav"
    upload.write_bytes(b"\x00" * 200)
    client = FakeClient()

    async def unused_fetch(url, dest_dir, **kwargs):
        raise AssertionError("fetch must not run for local files")

    pipeline = _pipeline(client, reporter, settings, sleep, fetch=unused_fetch)

    transcript = asyncio.run(pipeline.run_file("doc1", str(upload)))

    assert transcript == LONG_TEXT
    assert client.calls == [("input.wav", "fr", None)]
    assert not upload.exists()
    assert _leftovers(settings) == []
    assert reporter.last[1] == ExtractionStatus.SUCCESS


def test_run_file_missing_upload(reporter, settings, sleep, tmp_path):
    pipeline = _pipeline(FakeClient(), reporter, settings, sleep)

    with pytest.raises(DownloadError):
        asyncio.run(pipeline.run_file("doc1", str(tmp_path / "gone.mp3")))

    assert reporter.last[1] == ExtractionStatus.FAILED
    assert _leftovers(settings) == []


def test_chunked_success_cleans_up(reporter, settings, sleep):
    pipeline = _pipeline(FakeClient(), reporter, settings, sleep, size=5000, segments=4)
    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))
    assert _leftovers(settings) == []


# ── progress ─────────────────────────────────────────────────────────────


def test_progress_is_monotonic_and_ends_at_100(reporter, settings, sleep):
    client = FakeClient(
        script={"input_test.mp3": TranscriptionError("down", 503)}
    )
    pipeline = _pipeline(client, reporter, settings, sleep, size=100, segments=7)

    asyncio.run(pipeline.run("doc1", "https://media.test/a.mp3"))

    percents = reporter.percents
    assert percents == sorted(percents)
    assert percents[-1] == 100
    processing = [
        call[3] for call in reporter.calls if call[1] == ExtractionStatus.PROCESSING
    ]
    assert max(processing) <= 99
    assert processing[0] == 0
