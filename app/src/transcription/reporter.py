"""
Status reporting for transcription jobs.

The pipeline never talks to the database directly. It is handed a
``StatusReporter`` and writes one status record per document through it;
pollers read that record back. While a job is processing, the record's
``content`` carries the percentage in a parseable ``(<n>%)`` suffix so a
client holding only the raw string can still recover progress.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from configs.config import get_config
from src.database.status_repository import upsert_document_status
from src.transcription.models import ExtractionStatus

logger = logging.getLogger(__name__)

cfg = get_config()

_PROGRESS_PATTERN = re.compile(r"\((\d{1,3})%\)\s*$")


def format_status_content(
    status: ExtractionStatus, message: str, progress_percent: int
) -> str:
    """Build the human-readable ``content`` stored for a status."""
    if status in (ExtractionStatus.PENDING, ExtractionStatus.PROCESSING):
        return f"{cfg.PROCESSING_PREFIX}: {message} ({progress_percent}%)"
    return message


def parse_progress(content: Optional[str]) -> Optional[int]:
    """Recover the percentage embedded in a processing ``content`` string."""
    if not content:
        return None
    match = _PROGRESS_PATTERN.search(content)
    if not match:
        return None
    return min(int(match.group(1)), 100)


def is_stalled(
    record: Dict, threshold_seconds: float, now: Optional[datetime] = None
) -> bool:
    """True when a processing record has not been touched for ``threshold_seconds``."""
    if record.get("extraction_status") != ExtractionStatus.PROCESSING.value:
        return False
    updated_at = record.get("updated_at")
    if not isinstance(updated_at, datetime):
        return False
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - updated_at).total_seconds() > threshold_seconds


class StatusReporter(Protocol):
    """Anything that can persist a job's status."""

    async def report(
        self,
        document_id: str,
        status: ExtractionStatus,
        message: str,
        progress_percent: int,
    ) -> None:
        ...


class MongoStatusReporter:
    """Writes status records to the ``document_contents`` collection."""

    async def report(
        self,
        document_id: str,
        status: ExtractionStatus,
        message: str,
        progress_percent: int,
    ) -> None:
        content = format_status_content(status, message, progress_percent)
        # The transcript itself lives in content; keep status_message short
        status_message = (
            "" if status in (ExtractionStatus.SUCCESS, ExtractionStatus.MANUAL)
            else message
        )
        written = await asyncio.to_thread(
            upsert_document_status,
            document_id,
            content,
            status,
            status_message,
            progress_percent,
        )
        if not written:
            logger.warning(
                "Status for document %s not persisted (%s, %d%%)",
                document_id, status.value, progress_percent,
            )


class ProgressTracker:
    """
    Per-run view of a reporter bound to one document.

    Progress written through a tracker never goes backwards within a run,
    even when the pipeline falls back from the direct path or starts another
    pass over the segments.
    """

    def __init__(self, reporter: StatusReporter, document_id: str) -> None:
        self._reporter = reporter
        self._document_id = document_id
        self._percent = 0

    async def update(self, message: str, percent: int) -> None:
        self._percent = max(self._percent, min(int(percent), 99))
        logger.info(
            "Document %s: %s (%d%%)", self._document_id, message, self._percent
        )
        await self._reporter.report(
            self._document_id, ExtractionStatus.PROCESSING, message, self._percent
        )

    async def succeed(self, transcript: str) -> None:
        self._percent = 100
        await self._reporter.report(
            self._document_id, ExtractionStatus.SUCCESS, transcript, 100
        )

    async def fail(self, message: str) -> None:
        self._percent = 100
        await self._reporter.report(
            self._document_id, ExtractionStatus.FAILED, message, 100
        )
