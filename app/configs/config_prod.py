"""
Production environment configuration.

These are the baseline defaults. Local overrides live in config_local.py.
"""

# FastAPI docs are disabled in production
DOCS_ENABLED = False

CORS_ORIGINS = [
    "https://speaking.example.com",
    "https://app.speaking.example.com",
]

ALLOWED_HOSTS = [
    "api.speaking.example.com",
    "speaking.example.com",
    "localhost",
    "127.0.0.1",
]
