"""
Background transcription worker.

``transcribe_document`` runs one pipeline job and turns its outcome into
the response shape the API returns. ``TranscriptionQueue`` owns a bounded
queue and a fixed set of worker tasks; the application lifespan starts and
stops it, so no job runs outside a managed task.
"""

import asyncio
import logging
from collections import Counter
from types import SimpleNamespace
from typing import Awaitable, Callable, Dict, List, Optional

from configs.config import get_config
from src.transcription.errors import TranscriptionPipelineError
from src.transcription.models import TranscribeRequest
from src.transcription.pipeline import TranscriptionPipeline

logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """The queue is at capacity; the caller should retry later."""


async def _outcome(document_id: str, job: Awaitable[str]) -> Dict:
    """Await a pipeline run and return ``{success, transcription}`` or ``{success, message}``."""
    try:
        transcription = await job
        return {"success": True, "transcription": transcription}
    except TranscriptionPipelineError as exc:
        return {"success": False, "message": str(exc)}
    except Exception as exc:
        logger.error(
            "Job for document %s crashed: %s", document_id, exc, exc_info=True
        )
        return {"success": False, "message": "Unexpected transcription error"}


async def transcribe_document(
    pipeline: TranscriptionPipeline, request: TranscribeRequest
) -> Dict:
    """Run one URL job."""
    return await _outcome(
        request.document_id,
        pipeline.run(
            request.document_id,
            request.audio_url,
            language=request.language,
            force_chunked=request.force_chunked,
        ),
    )


async def transcribe_uploaded_file(
    pipeline: TranscriptionPipeline,
    document_id: str,
    audio_path: str,
    *,
    language: Optional[str] = None,
    force_chunked: bool = False,
) -> Dict:
    """Run one job on a file already on local disk."""
    return await _outcome(
        document_id,
        pipeline.run_file(
            document_id, audio_path, language=language, force_chunked=force_chunked
        ),
    )


class TranscriptionQueue:
    """Bounded FIFO of transcription requests served by worker tasks."""

    def __init__(
        self,
        pipeline_factory: Callable[[], TranscriptionPipeline],
        *,
        maxsize: int = 32,
        workers: int = 2,
    ) -> None:
        self._pipeline_factory = pipeline_factory
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker_count = max(1, workers)
        self._tasks: List[asyncio.Task] = []
        self._active: Counter = Counter()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def full(self) -> bool:
        return self._queue.full()

    def is_active(self, document_id: str) -> bool:
        return self._active[document_id] > 0

    async def start(self) -> None:
        if self._tasks:
            return
        for number in range(self._worker_count):
            self._tasks.append(
                asyncio.create_task(
                    self._worker_loop(f"transcriber-{number}"),
                    name=f"transcriber-{number}",
                )
            )
        logger.info("Transcription queue started with %d workers", self._worker_count)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(
            "Transcription queue stopped (%d requests left unprocessed)",
            self._queue.qsize(),
        )

    def submit(self, request: TranscribeRequest) -> int:
        """Enqueue a request without waiting; return the queue size after it."""
        if self.is_active(request.document_id):
            # Runs for one document are not serialized; the later writer wins
            logger.warning(
                "Document %s submitted while a run for it is in progress",
                request.document_id,
            )
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull as exc:
            logger.warning(
                "Queue full, rejecting document %s", request.document_id
            )
            raise QueueFullError("Transcription queue is full") from exc
        logger.info(
            "Queued document %s (%d waiting)",
            request.document_id, self._queue.qsize(),
        )
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    async def _worker_loop(self, name: str) -> None:
        logger.debug("Worker %s started", name)
        while True:
            request: TranscribeRequest = await self._queue.get()
            self._active[request.document_id] += 1
            try:
                outcome = await transcribe_document(self._pipeline_factory(), request)
                logger.info(
                    "Worker %s finished document %s (success=%s)",
                    name, request.document_id, outcome["success"],
                )
            except Exception as exc:
                logger.error(
                    "Worker %s failed on document %s: %s",
                    name, request.document_id, exc, exc_info=True,
                )
            finally:
                self._active[request.document_id] -= 1
                if self._active[request.document_id] <= 0:
                    del self._active[request.document_id]
                self._queue.task_done()


def build_queue(
    pipeline_factory: Callable[[], TranscriptionPipeline],
    settings: Optional[SimpleNamespace] = None,
) -> TranscriptionQueue:
    """Create a queue sized from configuration."""
    cfg = settings or get_config()
    return TranscriptionQueue(
        pipeline_factory, maxsize=cfg.QUEUE_MAX_SIZE, workers=cfg.QUEUE_WORKERS
    )
