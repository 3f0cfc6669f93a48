"""
Data models for the transcription module.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DOCUMENT_ID_REGEX = r"^[A-Za-z0-9_\-]{1,64}$"


class ExtractionStatus(str, Enum):
    """Possible states of a document's transcription record."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    MANUAL = "manual"


TERMINAL_STATUSES = frozenset(
    {ExtractionStatus.SUCCESS, ExtractionStatus.FAILED, ExtractionStatus.MANUAL}
)


@dataclass(frozen=True)
class Segment:
    """A bounded-duration slice of the source audio on local disk."""

    index: int
    local_path: str
    start_offset_seconds: float
    duration_seconds: float


@dataclass(frozen=True)
class SegmentResult:
    """Outcome of transcribing one segment."""

    index: int
    text: str
    succeeded: bool


class TranscribeRequest(BaseModel):
    """Inbound request to transcribe a document's audio."""

    model_config = ConfigDict(populate_by_name=True)

    audio_url: str = Field(
        ..., alias="audioUrl", min_length=1, max_length=2048,
        pattern=r"^https?://",
    )
    document_id: str = Field(..., alias="documentId", pattern=DOCUMENT_ID_REGEX)
    force_chunked: bool = Field(default=False, alias="forceChunked")
    language: Optional[str] = Field(
        default=None, min_length=2, max_length=8, pattern=r"^[a-zA-Z\-]+$"
    )


class ManualTranscriptRequest(BaseModel):
    """A transcript typed in by the user."""

    transcript: str = Field(..., min_length=1, max_length=1_000_000)
