"""
Security utilities for the FastAPI application.
Provides middlewares, validators, and helpers for hardening the server.
"""

import re
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from fastapi import HTTPException

from configs.config import get_config
from src.transcription.models import DOCUMENT_ID_REGEX

logger = logging.getLogger(__name__)

cfg = get_config()

# --------------- Input Validation Patterns ---------------

DOCUMENT_ID_PATTERN = re.compile(DOCUMENT_ID_REGEX)


# --------------- Middlewares ---------------


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Inject standard security headers on every response."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=63072000; includeSubDomains; preload"
            )
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a unique X-Request-ID to every request / response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# --------------- Validators ---------------


def validate_document_id(document_id: str) -> str:
    """Validate and return a safe document_id, or raise 400."""
    if not DOCUMENT_ID_PATTERN.match(document_id):
        logger.warning("Rejected invalid document_id: %r", document_id)
        raise HTTPException(status_code=400, detail="Invalid document ID format")
    return document_id


def require_transcription_api_key() -> str:
    """Dependency that fails fast when the speech-to-text key is missing."""
    api_key = cfg.OPENAI_API_KEY
    if not api_key or api_key in ("dummy-key", "your-openai-api-key-here"):
        logger.error("Transcription requested but OPENAI_API_KEY is not configured")
        raise HTTPException(
            status_code=400, detail="OpenAI API key is not configured"
        )
    return api_key


# --------------- Error Helpers ---------------


def safe_error_response(
    exc: Exception, context: str = "operation", status_code: int = 500
):
    """
    Log the real exception but return a sanitized message to the client.
    In development mode, the real error is included for debugging.
    """
    logger.error("Error in %s: %s", context, exc, exc_info=True)
    if cfg.ENVIRONMENT == "development":
        detail = f"[DEV] {context}: {exc}"
    else:
        detail = (
            f"An internal error occurred during {context}. "
            "Please try again later."
        )
    raise HTTPException(status_code=status_code, detail=detail)


# --------------- Admin Auth ---------------


def require_admin_key(request: Request):
    """
    Dependency that checks for a valid X-Admin-Key header.
    Raises 403 if missing or incorrect.
    """
    provided_key = request.headers.get("X-Admin-Key", "")
    if not provided_key or provided_key != cfg.ADMIN_API_KEY:
        logger.warning(
            "Unauthorized admin access attempt from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=403, detail="Forbidden: invalid admin key"
        )
