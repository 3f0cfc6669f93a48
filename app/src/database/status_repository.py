"""
Repository functions for per-document transcription status records.

Each function is a thin wrapper around a MongoDB operation, keeping the
database access pattern consistent and testable. Database errors are
logged and reported through the return value, never raised, so a failed
status write cannot abort a running transcription.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from configs.config import get_config
from src.database.connection import get_db

logger = logging.getLogger(__name__)

cfg = get_config()


# ── Upsert ───────────────────────────────────────────────────────────────


def upsert_document_status(
    document_id: str,
    content: str,
    extraction_status: str,
    status_message: str = "",
    progress_percentage: int = 0,
) -> bool:
    """Create the status record for a document, or overwrite its fields."""
    progress_percentage = max(0, min(int(progress_percentage), 100))
    status_value = getattr(extraction_status, "value", extraction_status)
    now = datetime.now(timezone.utc)
    try:
        db = get_db()
        result = db[cfg.DOCUMENT_CONTENTS_COLLECTION].update_one(
            {"document_id": document_id},
            {
                "$set": {
                    "content": content,
                    "extraction_status": status_value,
                    "status_message": status_message,
                    "progress_percentage": progress_percentage,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )
        if result.upserted_id is not None:
            logger.info(
                "Status record created for document %s (%s)",
                document_id, status_value,
            )
        else:
            logger.debug(
                "Document %s status: %s, %d%%",
                document_id, status_value, progress_percentage,
            )
        return True
    except Exception as exc:
        logger.error(
            "Error writing status for document %s: %s",
            document_id, exc, exc_info=True,
        )
        return False


# ── Read ─────────────────────────────────────────────────────────────────


def get_document_status(document_id: str) -> Optional[Dict]:
    """Retrieve the status record for a document."""
    try:
        db = get_db()
        record = db[cfg.DOCUMENT_CONTENTS_COLLECTION].find_one(
            {"document_id": document_id}
        )
        if record:
            record.pop("_id", None)
            return record
        logger.warning("No status record for document %s", document_id)
        return None
    except Exception as exc:
        logger.error(
            "Error reading status for document %s: %s",
            document_id, exc, exc_info=True,
        )
        return None


# ── Delete ───────────────────────────────────────────────────────────────


def delete_document_status(document_id: str) -> bool:
    """Remove a document's status record."""
    try:
        db = get_db()
        result = db[cfg.DOCUMENT_CONTENTS_COLLECTION].delete_one(
            {"document_id": document_id}
        )
        if result.deleted_count > 0:
            logger.info("Status record for document %s deleted", document_id)
            return True
        logger.warning(
            "Status delete for document %s failed — no match", document_id
        )
        return False
    except Exception as exc:
        logger.error(
            "Error deleting status for document %s: %s",
            document_id, exc, exc_info=True,
        )
        return False
