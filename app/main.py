import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from commons import limiter
from configs.config import get_config
from logging_config import setup_logging
from security import RequestIdMiddleware, SecurityHeadersMiddleware
from src.database.connection import DatabaseManager, get_db
from src.routes import admin_routes, auth_routes, speaking_routes

# ── Logging ──────────────────────────────────────────────────────────────────
setup_logging()
logger = logging.getLogger(__name__)

cfg = get_config()

# ── App Factory ──────────────────────────────────────────────────────────────
app = FastAPI(
    title="Speaking Evaluation API",
    docs_url="/docs" if cfg.DOCS_ENABLED else None,
    redoc_url="/redoc" if cfg.DOCS_ENABLED else None,
    openapi_url="/openapi.json" if cfg.DOCS_ENABLED else None,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── Middleware Stack (order matters – outermost first) ───────────────────────

# 1. Request-ID tracking
app.add_middleware(RequestIdMiddleware)

# 2. Security response headers
app.add_middleware(SecurityHeadersMiddleware)

# 3. Trusted hosts
app.add_middleware(TrustedHostMiddleware, allowed_hosts=cfg.ALLOWED_HOSTS)

# 4. CORS – explicit methods & headers instead of wildcards
app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=cfg.CORS_METHODS,
    allow_headers=cfg.CORS_HEADERS,
)

# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(auth_routes.router)
app.include_router(speaking_routes.router)
app.include_router(admin_routes.router)


@app.on_event("shutdown")
def close_database():
    DatabaseManager().close()


@app.get("/health")
@limiter.limit("30/minute")
def health(request: Request):
    """Liveness plus a database ping."""
    try:
        get_db().command("ping")
        database = "ok"
    except Exception as exc:
        logger.error("Health check database ping failed: %s", exc)
        database = "unavailable"
    return {"status": "ok", "database": database}


if __name__ == "__main__":
    import uvicorn
    import argparse

    parser = argparse.ArgumentParser(description="Run the speaking evaluation API")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload on code changes")
    parser.add_argument("--cert-file", default=None, help="Path to SSL certificate file (enables HTTPS)")
    parser.add_argument("--key-file", default=None, help="Path to SSL private key file (required with --cert-file)")

    args = parser.parse_args()

    if (args.cert_file and not args.key_file) or (args.key_file and not args.cert_file):
        logger.error("Both --cert-file and --key-file must be provided together")
        sys.exit(1)

    protocol = "HTTPS" if args.cert_file else "HTTP"
    logger.info("Starting %s server on %s:%s", protocol, args.host, args.port)

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        ssl_certfile=args.cert_file,
        ssl_keyfile=args.key_file,
        limit_concurrency=1000,
        limit_max_requests=10000,
    )
