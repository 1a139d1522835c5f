"""
Admin / operations API routes.

All endpoints require a valid ``X-Admin-Key`` header.

Endpoints:
    POST   /api/admin/watchdog/run                              — run one watchdog pass now
    POST   /api/admin/credentials                               — register a provider key
    GET    /api/admin/credentials                               — list keys (secrets hidden)
    POST   /api/admin/credentials/{credential_id}/reset-quota   — clear exhaustion flags
    POST   /api/admin/credentials/{credential_id}/state         — enable or disable a key
    POST   /api/admin/quota/rollover                            — clear flags from earlier days
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from commons import limiter
from configs.config import get_config
from security import require_admin_key, safe_error_response, validate_credential_id
from src.database.credential_repository import (
    add_credential,
    list_credentials,
    reset_model_quota,
    set_credential_active,
)
from src.jobs.tasks import enqueue_stage
from src.jobs.watchdog import roll_over_quota, run_watchdog

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api/admin", tags=["admin"])

KNOWN_PROVIDERS = tuple(cfg.ASR_PROVIDERS) + (cfg.LLM_PROVIDER,)


class AddCredentialRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=30)
    secret: str = Field(..., min_length=8, max_length=512)
    label: Optional[str] = Field(default=None, max_length=100)


class ResetQuotaRequest(BaseModel):
    model: Optional[str] = Field(default=None, max_length=100)


class CredentialStateRequest(BaseModel):
    is_active: bool


@router.post("/watchdog/run")
@limiter.limit("10/minute")
def run_watchdog_now(
    request: Request, _=Depends(require_admin_key)
) -> dict:
    """Run one watchdog pass: recover stalled jobs and dispatch pending ones."""
    try:
        summary = run_watchdog(enqueue_stage)
        logger.info("Manual watchdog pass: %s", summary)
        return {"success": True, **summary}
    except Exception as exc:
        safe_error_response(exc, context="run_watchdog")


@router.post("/credentials", status_code=201)
@limiter.limit("10/minute")
async def create_credential(
    request: Request, body: AddCredentialRequest, _=Depends(require_admin_key)
) -> dict:
    """Register an API key for an ASR or LLM provider."""
    if body.provider not in KNOWN_PROVIDERS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown provider (expected one of: {', '.join(KNOWN_PROVIDERS)})",
        )
    try:
        credential = add_credential(body.provider, body.secret, body.label)
    except Exception as exc:
        safe_error_response(exc, context="create_credential")
    credential.pop("secret", None)
    return credential


@router.get("/credentials")
@limiter.limit("30/minute")
async def get_credentials(
    request: Request,
    provider: Optional[str] = Query(default=None, max_length=30),
    _=Depends(require_admin_key),
) -> dict:
    """List credentials with their quota flags; secrets are never returned."""
    credentials = list_credentials(provider)
    return {"credentials": credentials, "count": len(credentials)}


@router.post("/credentials/{credential_id}/reset-quota")
@limiter.limit("10/minute")
async def reset_credential_quota(
    request: Request,
    credential_id: str,
    body: Optional[ResetQuotaRequest] = None,
    _=Depends(require_admin_key),
) -> dict:
    """Clear one model's exhaustion flag, or every flag when no model is given."""
    validate_credential_id(credential_id)
    model = body.model if body else None
    if not reset_model_quota(credential_id, model):
        raise HTTPException(status_code=404, detail="Credential not found")
    return {"success": True, "credential_id": credential_id, "model": model}


@router.post("/credentials/{credential_id}/state")
@limiter.limit("10/minute")
async def set_credential_state(
    request: Request,
    credential_id: str,
    body: CredentialStateRequest,
    _=Depends(require_admin_key),
) -> dict:
    """Take a credential out of rotation, or put it back."""
    validate_credential_id(credential_id)
    if not set_credential_active(credential_id, body.is_active):
        raise HTTPException(status_code=404, detail="Credential not found")
    logger.info("Credential %s active=%s", credential_id, body.is_active)
    return {"success": True, "credential_id": credential_id, "is_active": body.is_active}


@router.post("/quota/rollover")
@limiter.limit("10/minute")
async def rollover_quota(
    request: Request, _=Depends(require_admin_key)
) -> dict:
    """Clear exhaustion flags dated before today."""
    try:
        cleared = roll_over_quota()
        return {"success": True, "credentials_cleared": cleared}
    except Exception as exc:
        safe_error_response(exc, context="rollover_quota")
