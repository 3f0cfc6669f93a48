"""
Development / local environment configuration overrides.

Only values that DIFFER from production need to be declared here.
The base config.py merges these on top of the production defaults.
"""

import os

# FastAPI docs are enabled in development
DOCS_ENABLED = True

# Relaxed CORS for local development
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

# Trusted hosts include localhost
ALLOWED_HOSTS = [
    "localhost",
    "127.0.0.1",
]

# Scratch space next to the checkout instead of the mounted volume
TEMP_DIR = os.getenv("TRANSCRIBER_TEMP_DIR", "./temp")
