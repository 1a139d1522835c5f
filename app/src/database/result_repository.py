"""
Repository functions for stored evaluation results.
"""

import logging
from typing import Dict, Optional

from pymongo import ReturnDocument

from commons import generate_result_id, utcnow
from configs.config import get_config
from src.database.connection import get_db

logger = logging.getLogger(__name__)

cfg = get_config()


def insert_result_once(job_id: str, result_document: Dict) -> str:
    """
    Store the evaluation result for ``job_id`` unless one already exists.

    Uses an upsert with ``$setOnInsert`` on the unique ``job_id`` key, so a
    repeated call returns the first result's ID and writes nothing.
    """
    db = get_db()
    document = dict(result_document)
    # job_id is seeded from the filter on insert
    document.pop("job_id", None)
    document.update({"result_id": generate_result_id(), "created_at": utcnow()})
    stored = db[cfg.RESULTS_COLLECTION].find_one_and_update(
        {"job_id": job_id},
        {"$setOnInsert": document},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    if stored["result_id"] != document["result_id"]:
        logger.warning(
            "Result for job %s already stored as %s; keeping it",
            job_id, stored["result_id"],
        )
    else:
        logger.info("Result %s stored for job %s", stored["result_id"], job_id)
    return stored["result_id"]


def get_result(result_id: str, user_email: Optional[str] = None) -> Optional[Dict]:
    """Fetch a stored result, optionally enforcing ownership."""
    try:
        db = get_db()
        query = {"result_id": result_id}
        if user_email:
            query["user_email"] = user_email
        result = db[cfg.RESULTS_COLLECTION].find_one(query)
        if result:
            result.pop("_id", None)
            return result
        logger.warning("Result %s not found", result_id)
        return None
    except Exception as exc:
        logger.error(
            "Error getting result %s: %s", result_id, exc, exc_info=True
        )
        return None


def get_result_for_job(job_id: str) -> Optional[Dict]:
    db = get_db()
    result = db[cfg.RESULTS_COLLECTION].find_one({"job_id": job_id})
    if result:
        result.pop("_id", None)
    return result
