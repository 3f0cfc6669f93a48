"""
Admin / cleanup API routes.

All endpoints require a valid ``X-Admin-Key`` header.

Endpoints:
    POST   /api/admin/temp/cleanup              — empty the temp directory
    DELETE /api/admin/transcribe/{document_id}  — drop a status record
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from commons import limiter
from configs.config import get_config
from security import require_admin_key, safe_error_response, validate_document_id
from src.database.status_repository import delete_document_status
from src.transcription.temp_files import cleanup_all_temp_files

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/temp/cleanup")
@limiter.limit("5/minute")
async def cleanup_temp_files(
    request: Request, _=Depends(require_admin_key)
) -> dict:
    """Remove every file and directory left in the temp directory."""
    try:
        removed = await asyncio.to_thread(cleanup_all_temp_files, cfg.TEMP_DIR)
        logger.info("Admin temp cleanup removed %d entries", removed)
        return {
            "success": True,
            "message": f"Removed {removed} temporary entries",
        }
    except Exception as exc:
        safe_error_response(exc, context="cleanup_temp_files")


@router.delete("/transcribe/{document_id}")
@limiter.limit("10/minute")
def delete_status(
    request: Request, document_id: str, _=Depends(require_admin_key)
) -> dict:
    """Delete the status record of a document."""
    validate_document_id(document_id)
    if not delete_document_status(document_id):
        raise HTTPException(status_code=404, detail="Document not found")
    logger.info("Status record for document %s deleted", document_id)
    return {"success": True, "documentId": document_id}
