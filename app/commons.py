"""
Shared utility functions and singletons used across multiple modules.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Shared rate-limiter instance ─────────────────────────────────────────
# Created here (not in main.py) so that route modules can import it
# without a circular dependency.
limiter = Limiter(key_func=get_remote_address)


def get_transcription_queue(request: Request):
    """Return the queue the application lifespan attached to app.state."""
    return getattr(request.app.state, "transcription_queue", None)
