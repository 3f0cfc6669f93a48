"""
Transcription API routes.

Endpoints:
    POST   /api/transcribe                        — transcribe and wait for the result
    POST   /api/transcribe/upload                 — transcribe an uploaded file
    POST   /api/transcribe/jobs                   — queue a transcription job
    GET    /api/transcribe/{document_id}          — poll a document's status
    PUT    /api/transcribe/{document_id}/manual   — store a typed transcript
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse

from commons import get_transcription_queue, limiter
from configs.config import get_config
from security import (
    require_transcription_api_key,
    validate_document_id,
)
from src.database.status_repository import (
    get_document_status,
    upsert_document_status,
)
from src.transcription.models import (
    TERMINAL_STATUSES,
    ExtractionStatus,
    ManualTranscriptRequest,
    TranscribeRequest,
)
from src.transcription.pipeline import TranscriptionPipeline, create_pipeline
from src.transcription.reporter import (
    format_status_content,
    is_stalled,
    parse_progress,
)
from src.transcription.temp_files import create_work_dir, remove_work_dir
from src.transcription.worker import (
    QueueFullError,
    transcribe_document,
    transcribe_uploaded_file,
)

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api/transcribe", tags=["transcription"])


def get_pipeline(
    _api_key: str = Depends(require_transcription_api_key),
) -> TranscriptionPipeline:
    return create_pipeline()


# ── Synchronous transcription ────────────────────────────────────────────


@router.post("")
@limiter.limit("10/minute")
async def transcribe_endpoint(
    request: Request,
    body: TranscribeRequest,
    pipeline: TranscriptionPipeline = Depends(get_pipeline),
):
    """Transcribe the audio at ``audioUrl`` and return the transcript."""
    logger.info("Transcription requested for document %s", body.document_id)
    outcome = await transcribe_document(pipeline, body)
    if not outcome["success"]:
        return JSONResponse(status_code=500, content=outcome)
    return outcome


# ── Upload & transcribe ──────────────────────────────────────────────────


def _upload_extension(filename: Optional[str]) -> str:
    ext = os.path.splitext(os.path.basename(filename or ""))[1].lower()
    if not ext or len(ext) > 6 or not ext[1:].isalnum():
        return ".mp3"
    return ext


@router.post("/upload")
@limiter.limit("5/minute")
async def upload_endpoint(
    request: Request,
    audio: UploadFile = File(...),
    document_id: str = Form(..., alias="documentId"),
    force_chunked: bool = Form(default=False, alias="forceChunked"),
    language: Optional[str] = Form(default=None, max_length=8),
    pipeline: TranscriptionPipeline = Depends(get_pipeline),
):
    """Transcribe an uploaded audio file and return the transcript."""
    validate_document_id(document_id)
    logger.info(
        "Upload received for document %s: %s", document_id, audio.filename
    )

    upload_dir = create_work_dir(cfg.TEMP_DIR, prefix="upload_")
    try:
        upload_path = os.path.join(
            upload_dir, "upload" + _upload_extension(audio.filename)
        )
        total_bytes = 0
        with open(upload_path, "wb") as upload_file:
            while True:
                chunk = await audio.read(cfg.DOWNLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                total_bytes += len(chunk)
                if total_bytes > cfg.MAX_UPLOAD_SIZE_BYTES:
                    raise HTTPException(
                        status_code=413,
                        detail=(
                            f"File too large. Maximum allowed size is "
                            f"{cfg.MAX_UPLOAD_SIZE_BYTES // (1024 ** 2)} MB."
                        ),
                    )
                upload_file.write(chunk)
        if total_bytes == 0:
            raise HTTPException(status_code=400, detail="No audio file uploaded")
        logger.debug("Upload saved to %s (%d bytes)", upload_path, total_bytes)

        outcome = await transcribe_uploaded_file(
            pipeline,
            document_id,
            upload_path,
            language=language,
            force_chunked=force_chunked,
        )
    finally:
        remove_work_dir(upload_dir)

    if not outcome["success"]:
        return JSONResponse(status_code=500, content=outcome)
    return outcome


# ── Queued transcription ─────────────────────────────────────────────────


@router.post("/jobs", status_code=202)
@limiter.limit("30/minute")
async def enqueue_endpoint(
    request: Request,
    body: TranscribeRequest,
    _api_key: str = Depends(require_transcription_api_key),
) -> dict:
    """Record a pending status and hand the job to the background queue."""
    queue = get_transcription_queue(request)
    if queue is None or not queue.running:
        raise HTTPException(
            status_code=503, detail="Transcription queue is not running"
        )
    if queue.full:
        raise HTTPException(
            status_code=503, detail="Transcription queue is full, try again later"
        )

    message = "Waiting in queue"
    await asyncio.to_thread(
        upsert_document_status,
        body.document_id,
        format_status_content(ExtractionStatus.PENDING, message, 0),
        ExtractionStatus.PENDING,
        message,
        0,
    )

    try:
        position = queue.submit(body)
    except QueueFullError:
        await asyncio.to_thread(
            upsert_document_status,
            body.document_id,
            cfg.FAILURE_MESSAGE,
            ExtractionStatus.FAILED,
            cfg.FAILURE_MESSAGE,
            100,
        )
        raise HTTPException(
            status_code=503, detail="Transcription queue is full, try again later"
        )

    return {
        "documentId": body.document_id,
        "status": ExtractionStatus.PENDING.value,
        "queuePosition": position,
    }


# ── Status ───────────────────────────────────────────────────────────────


@router.get("/{document_id}")
@limiter.limit("120/minute")
def get_status(request: Request, document_id: str) -> dict:
    """Return the stored status record of a document."""
    validate_document_id(document_id)
    record = get_document_status(document_id)
    if not record:
        raise HTTPException(status_code=404, detail="Document not found")

    status = record.get("extraction_status")
    if status in {s.value for s in TERMINAL_STATUSES}:
        progress = 100
    else:
        progress = parse_progress(record.get("content"))
        if progress is None:
            progress = record.get("progress_percentage", 0)

    updated_at = record.get("updated_at")
    return {
        "documentId": document_id,
        "extraction_status": status,
        "content": record.get("content", ""),
        "status_message": record.get("status_message", ""),
        "progress": progress,
        "updated_at": (
            updated_at.isoformat() if isinstance(updated_at, datetime) else None
        ),
        "stalled": is_stalled(record, cfg.STALLED_AFTER_SECONDS),
    }


# ── Manual entry ─────────────────────────────────────────────────────────


@router.put("/{document_id}/manual")
@limiter.limit("30/minute")
def manual_transcript(
    request: Request, document_id: str, body: ManualTranscriptRequest
) -> dict:
    """Store a transcript typed in by the user."""
    validate_document_id(document_id)
    transcript = body.transcript.strip()
    if not transcript:
        raise HTTPException(status_code=400, detail="Transcript is empty")

    written = upsert_document_status(
        document_id, transcript, ExtractionStatus.MANUAL, "", 100
    )
    if not written:
        raise HTTPException(status_code=500, detail="Failed to save transcript")

    logger.info(
        "Manual transcript saved for document %s (%d characters)",
        document_id, len(transcript),
    )
    return {
        "documentId": document_id,
        "extraction_status": ExtractionStatus.MANUAL.value,
    }
