"""
Repository functions for provider API credentials.

A credential carries a per-model quota map::

    {"model_quota": {"gemini-2_5-flash": {"exhausted": True,
                                          "exhausted_date": "2026-10-19"}}}

Model names are stored with dots replaced because MongoDB treats a dot
in a field name as a path separator.
"""

import logging
import uuid
from typing import Dict, List, Optional

from pymongo import ASCENDING

from commons import utcnow
from configs.config import get_config
from src.database.connection import get_db

logger = logging.getLogger(__name__)

cfg = get_config()


def quota_key(model_name: str) -> str:
    """Field-safe key for ``model_name`` inside ``model_quota``."""
    return model_name.replace(".", "_")


# ── Create ───────────────────────────────────────────────────────────────


def add_credential(provider: str, secret: str, label: Optional[str] = None) -> Dict:
    """Register a new active credential for ``provider``."""
    db = get_db()
    now = utcnow()
    document = {
        "credential_id": f"cred_{uuid.uuid4().hex[:12]}",
        "provider": provider,
        "label": label,
        "secret": secret,
        "is_active": True,
        "error_count": 0,
        "model_quota": {},
        "created_at": now,
        "updated_at": now,
    }
    db[cfg.CREDENTIALS_COLLECTION].insert_one(document)
    document.pop("_id", None)
    logger.info("Credential %s added for provider %s", document["credential_id"], provider)
    return document


# ── Read ─────────────────────────────────────────────────────────────────


def list_active_credentials(provider: str) -> List[Dict]:
    """Active credentials for ``provider`` ordered by ascending error count."""
    try:
        db = get_db()
        records = list(
            db[cfg.CREDENTIALS_COLLECTION]
            .find({"provider": provider, "is_active": True})
            .sort([("error_count", ASCENDING), ("created_at", ASCENDING)])
        )
        for record in records:
            record.pop("_id", None)
        logger.debug("Loaded %d active %s credentials", len(records), provider)
        return records
    except Exception as exc:
        logger.error(
            "Error loading %s credentials: %s", provider, exc, exc_info=True
        )
        return []


def list_credentials(provider: Optional[str] = None) -> List[Dict]:
    """All credentials without their secrets, for admin views."""
    try:
        db = get_db()
        query = {"provider": provider} if provider else {}
        records = list(
            db[cfg.CREDENTIALS_COLLECTION].find(query, {"secret": 0, "_id": 0})
        )
        return records
    except Exception as exc:
        logger.error("Error listing credentials: %s", exc, exc_info=True)
        return []


# ── Update ───────────────────────────────────────────────────────────────


def mark_model_exhausted(credential_id: str, model_name: str, day: str) -> bool:
    """Flag ``model_name`` as out of daily quota on ``credential_id``."""
    try:
        db = get_db()
        field = f"model_quota.{quota_key(model_name)}"
        result = db[cfg.CREDENTIALS_COLLECTION].update_one(
            {"credential_id": credential_id},
            {
                "$set": {
                    field: {"exhausted": True, "exhausted_date": day},
                    "updated_at": utcnow(),
                }
            },
        )
        if result.matched_count > 0:
            logger.warning(
                "Credential %s exhausted for %s on %s",
                credential_id, model_name, day,
            )
            return True
        logger.warning("Credential %s not found for exhaustion mark", credential_id)
        return False
    except Exception as exc:
        logger.error(
            "Error marking credential %s exhausted: %s",
            credential_id, exc, exc_info=True,
        )
        return False


def reset_model_quota(credential_id: str, model_name: Optional[str] = None) -> bool:
    """Clear one model's exhaustion flag, or all flags when no model given."""
    try:
        db = get_db()
        if model_name:
            update = {"$unset": {f"model_quota.{quota_key(model_name)}": ""}}
        else:
            update = {"$set": {"model_quota": {}}}
        result = db[cfg.CREDENTIALS_COLLECTION].update_one(
            {"credential_id": credential_id}, update
        )
        if result.matched_count > 0:
            logger.info(
                "Credential %s quota reset (%s)", credential_id, model_name or "all models"
            )
            return True
        return False
    except Exception as exc:
        logger.error(
            "Error resetting quota for %s: %s", credential_id, exc, exc_info=True
        )
        return False


def reset_stale_exhaustion(today: str) -> int:
    """
    Day rollover: clear every flag not dated ``today``.

    Returns the number of credentials touched.
    """
    db = get_db()
    touched = 0
    for record in db[cfg.CREDENTIALS_COLLECTION].find({}, {"credential_id": 1, "model_quota": 1}):
        quota = record.get("model_quota") or {}
        kept = {
            key: flag for key, flag in quota.items()
            if flag.get("exhausted") and flag.get("exhausted_date") == today
        }
        if kept != quota:
            db[cfg.CREDENTIALS_COLLECTION].update_one(
                {"credential_id": record["credential_id"]},
                {"$set": {"model_quota": kept, "updated_at": utcnow()}},
            )
            touched += 1
    logger.info("Quota rollover cleared flags on %d credentials", touched)
    return touched


def increment_error_count(credential_id: str) -> bool:
    try:
        db = get_db()
        result = db[cfg.CREDENTIALS_COLLECTION].update_one(
            {"credential_id": credential_id},
            {"$inc": {"error_count": 1}, "$set": {"updated_at": utcnow()}},
        )
        return result.modified_count > 0
    except Exception as exc:
        logger.error(
            "Error incrementing error count for %s: %s",
            credential_id, exc, exc_info=True,
        )
        return False


def set_credential_active(credential_id: str, is_active: bool) -> bool:
    db = get_db()
    result = db[cfg.CREDENTIALS_COLLECTION].update_one(
        {"credential_id": credential_id},
        {"$set": {"is_active": is_active, "updated_at": utcnow()}},
    )
    return result.matched_count > 0
