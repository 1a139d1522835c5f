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

ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

# Shorter sweeps make stuck jobs visible quickly while developing
WATCHDOG_INTERVAL_SECONDS = 30
STALE_HEARTBEAT_SECONDS = 60

# No broker needed locally: stages run in-process
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")

LOG_FILE_APP = "app-dev.log"
LOG_FILE_ERRORS = "errors-dev.log"
