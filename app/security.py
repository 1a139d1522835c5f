"""
Security utilities for the FastAPI application.
Provides middlewares, validators, and helpers for hardening the server.
"""

import re
import uuid
import logging
from typing import Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from fastapi import HTTPException

from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

# --------------- Input Validation Patterns ---------------

JOB_ID_PATTERN = re.compile(r"^job_[a-f0-9]{12}$")
RESULT_ID_PATTERN = re.compile(r"^res_[a-f0-9]{12}$")
CREDENTIAL_ID_PATTERN = re.compile(r"^cred_[a-f0-9]{12}$")
SEGMENT_KEY_PATTERN = re.compile(r"^part[123]-q[A-Za-z0-9\-]{1,64}$")
STORAGE_REF_PATTERN = re.compile(r"^[A-Za-z0-9_\-./]{1,512}$")
TEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


# --------------- Middlewares ---------------


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Inject standard security headers on every response."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=()"
        )
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


def validate_job_id(job_id: str) -> str:
    """Validate and return a safe job_id, or raise 400."""
    if not JOB_ID_PATTERN.match(job_id):
        logger.warning("Rejected invalid job_id: %r", job_id)
        raise HTTPException(status_code=400, detail="Invalid job ID format")
    return job_id


def validate_result_id(result_id: str) -> str:
    """Validate and return a safe result_id, or raise 400."""
    if not RESULT_ID_PATTERN.match(result_id):
        logger.warning("Rejected invalid result_id: %r", result_id)
        raise HTTPException(status_code=400, detail="Invalid result ID format")
    return result_id


def validate_credential_id(credential_id: str) -> str:
    """Validate and return a safe credential_id, or raise 400."""
    if not CREDENTIAL_ID_PATTERN.match(credential_id):
        logger.warning("Rejected invalid credential_id: %r", credential_id)
        raise HTTPException(
            status_code=400, detail="Invalid credential ID format"
        )
    return credential_id


def validate_test_id(test_id: str) -> str:
    if not test_id or not TEST_ID_PATTERN.match(test_id):
        logger.warning("Rejected invalid test_id: %r", test_id)
        raise HTTPException(status_code=400, detail="Invalid test ID format")
    return test_id


def validate_file_paths(file_paths: Dict[str, str]) -> Dict[str, str]:
    """
    Validate the segment-key → storage-reference map of a submission.

    Keys must look like ``part2-q<question id>``; references must be plain
    object keys (no schemes, no parent-directory hops).
    """
    if not file_paths:
        raise HTTPException(status_code=400, detail="Missing testId or filePaths")
    if len(file_paths) > cfg.MAX_SEGMENTS_PER_JOB:
        raise HTTPException(
            status_code=400,
            detail=f"Too many segments (max {cfg.MAX_SEGMENTS_PER_JOB})",
        )
    for segment_key, storage_ref in file_paths.items():
        if not SEGMENT_KEY_PATTERN.match(segment_key):
            logger.warning("Rejected invalid segment key: %r", segment_key)
            raise HTTPException(
                status_code=400, detail=f"Invalid segment key: {segment_key}"
            )
        if (
            not isinstance(storage_ref, str)
            or not STORAGE_REF_PATTERN.match(storage_ref)
            or ".." in storage_ref
        ):
            logger.warning("Rejected invalid storage reference: %r", storage_ref)
            raise HTTPException(
                status_code=400,
                detail=f"Invalid storage reference for {segment_key}",
            )
    return file_paths


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
