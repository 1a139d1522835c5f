"""
Recovery policy shared by the watchdog and the stage workers.

A job that stalled or whose stage failed goes back to the nearest
retry-safe stage with its retry count bumped. Once retries run out it
fails, unless it was transcribing and its ASR provider has an unused
fallback, in which case it restarts transcription on that provider.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from configs.config import get_config
from src.database import job_repository
from src.jobs.models import Dispatch, JobStage, retry_safe_stage

logger = logging.getLogger(__name__)

cfg = get_config()


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SWITCH_PROVIDER = "switch_provider"
    FAIL = "fail"


@dataclass
class RecoveryPlan:
    action: RecoveryAction
    stage: str
    retry_count: int
    error: str
    provider: Optional[str] = None


def fallback_provider(job: Dict) -> Optional[str]:
    """Unused fallback ASR provider for the job, if switching is enabled."""
    if not cfg.PROVIDER_FALLBACK_ENABLED:
        return None
    current = job.get("provider") or cfg.DEFAULT_ASR_PROVIDER
    candidate = cfg.ASR_PROVIDER_FALLBACK.get(current)
    history = job.get("provider_history") or [current]
    if candidate and candidate not in history and candidate in cfg.ASR_PROVIDERS:
        return candidate
    return None


def plan_recovery(job: Dict, reason: Optional[str] = None) -> RecoveryPlan:
    """
    Decide how to recover ``job``. ``reason`` is the worker's error; the
    watchdog passes none and gets its own wording.
    """
    stage = job.get("stage") or JobStage.PENDING_TRANSCRIPTION.value
    retry_count = int(job.get("retry_count") or 0)
    max_retries = int(job.get("max_retries") or cfg.DEFAULT_MAX_RETRIES)
    attempts = retry_count + 1
    safe_stage = retry_safe_stage(stage)

    if retry_count < max_retries:
        error = reason or f"Watchdog: reset stale job from {stage} stage"
        return RecoveryPlan(RecoveryAction.RETRY, safe_stage, attempts, error)

    if safe_stage == JobStage.PENDING_TRANSCRIPTION.value:
        provider = fallback_provider(job)
        if provider:
            error = (
                f"Switched ASR provider from {job.get('provider')} to {provider} "
                f"after {attempts} attempts"
            )
            return RecoveryPlan(
                RecoveryAction.SWITCH_PROVIDER,
                JobStage.PENDING_TRANSCRIPTION.value,
                0,
                error,
                provider=provider,
            )

    if reason:
        error = f"{reason} (gave up after {attempts} attempts)"
    else:
        error = f"Watchdog: job stuck in {stage} stage after {attempts} attempts"
    return RecoveryPlan(RecoveryAction.FAIL, stage, attempts, error)


def apply_recovery(job: Dict, plan: RecoveryPlan) -> bool:
    """
    Write ``plan`` to the job, pinned to the lock token and retry count the
    plan was made from. False when the job moved on in the meantime.
    """
    expected = {
        "lock_token": job.get("lock_token"),
        "retry_count": job.get("retry_count") or 0,
    }
    if plan.action is RecoveryAction.FAIL:
        return job_repository.fail_job(job["job_id"], plan.error, expected=expected)
    return job_repository.reset_job_for_retry(
        job["job_id"],
        plan.stage,
        plan.retry_count,
        plan.error,
        expected=expected,
        provider=plan.provider,
    )


def recover_failed_stage(job_id: str, lock_token: str, error: Exception) -> Optional[Dispatch]:
    """
    Apply the recovery policy after a stage raised. Returns where the job
    should be dispatched next, or None when it failed or moved on.
    """
    job = job_repository.get_job(job_id)
    if not job or job.get("lock_token") != lock_token:
        logger.warning("Job %s: stage failed after losing the lock, leaving it alone", job_id)
        return None

    plan = plan_recovery(job, reason=f"{type(error).__name__}: {error}")
    if not apply_recovery(job, plan):
        return None
    if plan.action is RecoveryAction.FAIL:
        return None
    logger.info("Job %s: %s, re-dispatching at %s", job_id, plan.action.value, plan.stage)
    return Dispatch(job_id, plan.stage, countdown=cfg.STAGE_RETRY_COUNTDOWN_SECONDS)
