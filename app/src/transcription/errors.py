"""
Exception taxonomy for the transcription pipeline.

Unit-level errors (one download attempt, one segment) are absorbed by the
retry loops that own them. Only the pipeline decides which of these end a
job as ``failed``.
"""


class TranscriptionPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class DownloadError(TranscriptionPipelineError):
    """The source media could not be fetched."""

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class ProbeError(TranscriptionPipelineError):
    """The media duration could not be determined."""


class SegmentationError(TranscriptionPipelineError):
    """No segment at all could be extracted from the source."""


class TranscriptionError(TranscriptionPipelineError):
    """A single unit could not be transcribed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class SizeLimitExceeded(TranscriptionError):
    """The unit is larger than the hosted service accepts."""

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"File too large for the transcription service "
            f"({size_bytes} bytes > {limit_bytes} bytes)"
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class ReassemblyError(TranscriptionPipelineError):
    """Every segment failed, so there is nothing to reassemble."""


class InsufficientTranscriptError(TranscriptionPipelineError):
    """The service answered, but the transcript is too short to be useful."""
