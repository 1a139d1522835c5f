"""
Repository functions for speaking evaluation jobs.

Each function is a thin wrapper around a MongoDB operation,
keeping the database access pattern consistent and testable.

Writes made by a stage worker are guarded by the worker's ``lock_token``
so a worker that lost its lock can never overwrite a newer owner's state.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pymongo import ReturnDocument

from commons import utcnow
from configs.config import get_config
from src.database.connection import get_db
from src.jobs.models import (
    CLAIMABLE_STAGES,
    TERMINAL_STATUSES,
    WORKING_STAGE,
    JobStage,
    JobStatus,
    WorkerKind,
)

logger = logging.getLogger(__name__)

cfg = get_config()

_LOCK_CLEARED = {"lock_token": None, "lock_expires_at": None}


def _strip(job: Optional[Dict]) -> Optional[Dict]:
    if job:
        job.pop("_id", None)
    return job


# ── Create ───────────────────────────────────────────────────────────────


def create_job(job_id: str, user_email: str, job_data: Dict) -> Dict:
    """Insert a new evaluation job document in the pending state."""
    db = get_db()
    now = utcnow()
    job_document = {
        "job_id": job_id,
        "user_email": user_email,
        "test_id": job_data["test_id"],
        "status": JobStatus.PENDING.value,
        "stage": JobStage.PENDING_TRANSCRIPTION.value,
        "provider": job_data.get("provider", cfg.DEFAULT_ASR_PROVIDER),
        "provider_history": [job_data.get("provider", cfg.DEFAULT_ASR_PROVIDER)],
        "file_paths": job_data["file_paths"],
        "durations": job_data.get("durations") or {},
        "topic": job_data.get("topic"),
        "difficulty": job_data.get("difficulty"),
        "fluency_flag": bool(job_data.get("fluency_flag", False)),
        "evaluation_mode": job_data.get("evaluation_mode", "accuracy"),
        "retry_count": 0,
        "max_retries": job_data.get("max_retries", cfg.DEFAULT_MAX_RETRIES),
        "heartbeat_at": None,
        "lock_token": None,
        "lock_expires_at": None,
        "transcription_result": None,
        "result_id": None,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
        "completed_at": None,
    }
    db[cfg.JOBS_COLLECTION].insert_one(job_document)
    logger.debug("Job %s created in MongoDB", job_id)
    return _strip(dict(job_document))


# ── Read ─────────────────────────────────────────────────────────────────


def get_job(job_id: str, user_email: Optional[str] = None) -> Optional[Dict]:
    """Retrieve a single job by its ID, optionally enforcing ownership."""
    try:
        db = get_db()
        query = {"job_id": job_id}
        if user_email:
            query["user_email"] = user_email

        job = db[cfg.JOBS_COLLECTION].find_one(query)
        if job:
            logger.debug("Job %s retrieved from MongoDB", job_id)
            return _strip(job)
        logger.warning("Job %s not found in MongoDB", job_id)
        return None
    except Exception as exc:
        logger.error(
            "Error getting job %s from MongoDB: %s", job_id, exc, exc_info=True
        )
        return None


def get_all_jobs(user_email: str, status: Optional[str] = None) -> List[Dict]:
    """Return all jobs for a specific user, optionally filtered by status."""
    try:
        db = get_db()
        query = {"user_email": user_email}
        if status is not None:
            query["status"] = status

        jobs = list(
            db[cfg.JOBS_COLLECTION]
            .find(query, {"transcription_result": 0})
            .sort("created_at", -1)
        )
        for job in jobs:
            _strip(job)
        logger.debug("Retrieved %d jobs with status=%s", len(jobs), status)
        return jobs
    except Exception as exc:
        logger.error("Error getting all jobs: %s", exc, exc_info=True)
        return []


def is_job_cancelled(job_id: str) -> bool:
    """True when the owner cancelled the job (or it vanished)."""
    db = get_db()
    job = db[cfg.JOBS_COLLECTION].find_one({"job_id": job_id}, {"status": 1})
    return job is None or job.get("status") == JobStatus.CANCELLED.value


def find_stale_jobs(
    stale_before: datetime, now: datetime, limit: int
) -> List[Dict]:
    """
    Jobs marked processing whose worker looks dead: heartbeat older than
    ``stale_before``, no heartbeat at all, or an expired lock.
    """
    try:
        db = get_db()
        query = {
            "status": JobStatus.PROCESSING.value,
            "$or": [
                {"heartbeat_at": {"$lt": stale_before}},
                {"heartbeat_at": None},
                {"lock_expires_at": {"$lt": now}},
            ],
        }
        jobs = list(
            db[cfg.JOBS_COLLECTION].find(query).sort("updated_at", 1).limit(limit)
        )
        return [_strip(job) for job in jobs]
    except Exception as exc:
        logger.error("Error finding stale jobs: %s", exc, exc_info=True)
        return []


def find_pending_jobs(stages: List[str], limit: int) -> List[Dict]:
    """Pending jobs waiting at one of ``stages``, oldest first."""
    try:
        db = get_db()
        query = {
            "status": JobStatus.PENDING.value,
            "stage": {"$in": list(stages)},
        }
        jobs = list(
            db[cfg.JOBS_COLLECTION].find(query).sort("created_at", 1).limit(limit)
        )
        return [_strip(job) for job in jobs]
    except Exception as exc:
        logger.error("Error finding pending jobs: %s", exc, exc_info=True)
        return []


# ── Locking ──────────────────────────────────────────────────────────────


def claim_job_lock(
    job_id: str,
    worker: WorkerKind,
    lock_seconds: int,
    now: Optional[datetime] = None,
) -> Optional[Dict]:
    """
    Atomically take the job's lock for ``worker``.

    Succeeds only when the job is pending or processing at a stage the
    worker handles and no live lock exists. Returns the updated job
    (including the new ``lock_token``) or None when someone else owns it.
    """
    now = now or utcnow()
    token = uuid.uuid4().hex
    db = get_db()
    job = db[cfg.JOBS_COLLECTION].find_one_and_update(
        {
            "job_id": job_id,
            "status": {
                "$in": [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
            },
            "stage": {"$in": list(CLAIMABLE_STAGES[worker])},
            "$or": [
                {"lock_token": None},
                {"lock_expires_at": {"$lt": now}},
            ],
        },
        {
            "$set": {
                "lock_token": token,
                "lock_expires_at": now + timedelta(seconds=lock_seconds),
                "heartbeat_at": now,
                "status": JobStatus.PROCESSING.value,
                "stage": WORKING_STAGE[worker],
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if job is None:
        logger.info("Job %s not claimable by %s worker", job_id, worker.value)
        return None
    logger.info("Job %s locked by %s worker", job_id, worker.value)
    return _strip(job)


def refresh_heartbeat(job_id: str, lock_token: str, lock_seconds: int) -> bool:
    """Extend the lock and bump ``heartbeat_at``; False if the lock was lost."""
    try:
        now = utcnow()
        db = get_db()
        result = db[cfg.JOBS_COLLECTION].update_one(
            {"job_id": job_id, "lock_token": lock_token},
            {
                "$set": {
                    "heartbeat_at": now,
                    "lock_expires_at": now + timedelta(seconds=lock_seconds),
                }
            },
        )
        if result.matched_count == 0:
            logger.warning("Job %s heartbeat rejected: lock lost", job_id)
            return False
        return True
    except Exception as exc:
        logger.error(
            "Job %s heartbeat error: %s", job_id, exc, exc_info=True
        )
        return False


def release_lock(job_id: str, lock_token: str) -> bool:
    """Drop the lock without touching stage or status."""
    try:
        db = get_db()
        result = db[cfg.JOBS_COLLECTION].update_one(
            {"job_id": job_id, "lock_token": lock_token},
            {"$set": {**_LOCK_CLEARED, "updated_at": utcnow()}},
        )
        return result.modified_count > 0
    except Exception as exc:
        logger.error(
            "Job %s lock release error: %s", job_id, exc, exc_info=True
        )
        return False


# ── Stage transitions ────────────────────────────────────────────────────


def save_transcription_result(
    job_id: str, lock_token: str, transcription_result: Dict
) -> bool:
    """Persist the merged transcripts and hand the job to evaluation."""
    now = utcnow()
    db = get_db()
    result = db[cfg.JOBS_COLLECTION].update_one(
        {
            "job_id": job_id,
            "lock_token": lock_token,
            "status": JobStatus.PROCESSING.value,
        },
        {
            "$set": {
                "transcription_result": transcription_result,
                "stage": JobStage.PENDING_EVAL.value,
                "status": JobStatus.PENDING.value,
                "heartbeat_at": now,
                "updated_at": now,
                **_LOCK_CLEARED,
            }
        },
    )
    if result.modified_count > 0:
        logger.info("Job %s transcription stored, now pending_eval", job_id)
        return True
    logger.warning("Job %s transcription save rejected: lock lost", job_id)
    return False


def advance_to_evaluation(job_id: str) -> bool:
    """Skip transcription for a pending job that already has transcripts."""
    db = get_db()
    result = db[cfg.JOBS_COLLECTION].update_one(
        {
            "job_id": job_id,
            "status": JobStatus.PENDING.value,
            "stage": JobStage.PENDING_TRANSCRIPTION.value,
            "transcription_result": {"$ne": None},
        },
        {
            "$set": {
                "stage": JobStage.PENDING_EVAL.value,
                "updated_at": utcnow(),
            }
        },
    )
    if result.modified_count > 0:
        logger.info("Job %s already transcribed, advanced to pending_eval", job_id)
        return True
    return False


def complete_job(job_id: str, lock_token: str, result_id: str) -> bool:
    """Mark the job completed and point it at its stored result."""
    now = utcnow()
    db = get_db()
    result = db[cfg.JOBS_COLLECTION].update_one(
        {"job_id": job_id, "lock_token": lock_token},
        {
            "$set": {
                "status": JobStatus.COMPLETED.value,
                "stage": JobStage.COMPLETED.value,
                "result_id": result_id,
                "last_error": None,
                "completed_at": now,
                "updated_at": now,
                **_LOCK_CLEARED,
            }
        },
    )
    if result.modified_count > 0:
        logger.info("Job %s completed with result %s", job_id, result_id)
        return True
    logger.warning("Job %s completion rejected: lock lost", job_id)
    return False


def reset_job_for_retry(
    job_id: str,
    stage: str,
    retry_count: int,
    error: str,
    expected: Dict,
    provider: Optional[str] = None,
) -> bool:
    """
    Put a job back to ``pending`` at ``stage`` with the lock cleared.

    ``expected`` pins the fields observed when the decision was taken
    (lock token, retry count) so a concurrent owner is never clobbered.
    """
    update = {
        "status": JobStatus.PENDING.value,
        "stage": stage,
        "retry_count": retry_count,
        "last_error": error,
        "heartbeat_at": None,
        "updated_at": utcnow(),
        **_LOCK_CLEARED,
    }
    operation = {"$set": update}
    if provider:
        update["provider"] = provider
        operation["$addToSet"] = {"provider_history": provider}

    db = get_db()
    result = db[cfg.JOBS_COLLECTION].update_one(
        {"job_id": job_id, **expected}, operation
    )
    if result.modified_count > 0:
        logger.info(
            "Job %s reset to %s (retry %d, provider=%s)",
            job_id, stage, retry_count, provider or "unchanged",
        )
        return True
    logger.warning("Job %s reset skipped: state changed meanwhile", job_id)
    return False


def fail_job(job_id: str, error: str, expected: Optional[Dict] = None) -> bool:
    """Mark a job terminally failed with a human-readable error."""
    now = utcnow()
    db = get_db()
    query = {"job_id": job_id, "status": {"$nin": list(TERMINAL_STATUSES)}}
    query.update(expected or {})
    result = db[cfg.JOBS_COLLECTION].update_one(
        query,
        {
            "$set": {
                "status": JobStatus.FAILED.value,
                "stage": JobStage.FAILED.value,
                "last_error": error,
                "completed_at": now,
                "updated_at": now,
                **_LOCK_CLEARED,
            }
        },
    )
    if result.modified_count > 0:
        logger.error("Job %s marked as failed: %s", job_id, error)
        return True
    logger.warning("Job %s fail update skipped: no match", job_id)
    return False


def cancel_job(job_id: str, user_email: Optional[str] = None,
               reason: str = "Cancelled by user") -> bool:
    """Move a non-terminal job to the cancelled state."""
    try:
        now = utcnow()
        db = get_db()
        query = {"job_id": job_id, "status": {"$nin": list(TERMINAL_STATUSES)}}
        if user_email:
            query["user_email"] = user_email
        result = db[cfg.JOBS_COLLECTION].update_one(
            query,
            {
                "$set": {
                    "status": JobStatus.CANCELLED.value,
                    "stage": JobStage.CANCELLED.value,
                    "last_error": reason,
                    "completed_at": now,
                    "updated_at": now,
                }
            },
        )
        if result.modified_count > 0:
            logger.info("Job %s cancelled: %s", job_id, reason)
            return True
        logger.warning("Job %s cancel skipped: terminal or missing", job_id)
        return False
    except Exception as exc:
        logger.error("Error cancelling job %s: %s", job_id, exc, exc_info=True)
        return False


def resubmit_job(job_id: str, user_email: str) -> Optional[Dict]:
    """
    Restart a failed or cancelled job.

    A stored transcription is kept, so such a job resumes at evaluation.
    """
    db = get_db()
    job = db[cfg.JOBS_COLLECTION].find_one(
        {
            "job_id": job_id,
            "user_email": user_email,
            "status": {
                "$in": [JobStatus.FAILED.value, JobStatus.CANCELLED.value]
            },
        }
    )
    if not job:
        return None
    stage = (
        JobStage.PENDING_EVAL.value
        if job.get("transcription_result")
        else JobStage.PENDING_TRANSCRIPTION.value
    )
    updated = db[cfg.JOBS_COLLECTION].find_one_and_update(
        {"job_id": job_id, "status": job["status"]},
        {
            "$set": {
                "status": JobStatus.PENDING.value,
                "stage": stage,
                "retry_count": 0,
                "last_error": None,
                "completed_at": None,
                "heartbeat_at": None,
                "updated_at": utcnow(),
                **_LOCK_CLEARED,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated:
        logger.info("Job %s resubmitted at stage %s", job_id, stage)
    return _strip(updated)


def cancel_superseded_jobs(user_email: str, test_id: str, keep_job_id: str) -> int:
    """Cancel other unfinished jobs for the same submission."""
    try:
        now = utcnow()
        db = get_db()
        result = db[cfg.JOBS_COLLECTION].update_many(
            {
                "user_email": user_email,
                "test_id": test_id,
                "job_id": {"$ne": keep_job_id},
                "status": {"$nin": list(TERMINAL_STATUSES)},
            },
            {
                "$set": {
                    "status": JobStatus.CANCELLED.value,
                    "stage": JobStage.CANCELLED.value,
                    "last_error": "Superseded by successful evaluation",
                    "completed_at": now,
                    "updated_at": now,
                    **_LOCK_CLEARED,
                }
            },
        )
        if result.modified_count:
            logger.info(
                "Cancelled %d superseded jobs for test %s",
                result.modified_count, test_id,
            )
        return result.modified_count
    except Exception as exc:
        logger.error(
            "Error cancelling superseded jobs for test %s: %s",
            test_id, exc, exc_info=True,
        )
        return 0
