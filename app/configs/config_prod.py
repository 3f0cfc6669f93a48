"""
Production environment configuration.

These are the baseline defaults. Local overrides live in config_local.py.
"""

# FastAPI docs are disabled in production
DOCS_ENABLED = False

CORS_ORIGINS = [
    "https://transcribe.example.org",
]

ALLOWED_HOSTS = [
    "transcribe.example.org",
    "api.transcribe.example.org",
    "localhost",
    "127.0.0.1",
]
