"""
Watchdog sweeps.

Runs on a schedule (and on demand from the admin API). It rolls stalled
jobs back to a retry-safe stage, dispatches pending jobs to their stage
worker and clears yesterday's quota exhaustion flags.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from commons import today_utc, utcnow
from configs.config import get_config
from src.database import credential_repository, job_repository
from src.jobs.models import PENDING_STAGE_WORKER, Dispatch, JobStage
from src.jobs.recovery import RecoveryAction, apply_recovery, plan_recovery

logger = logging.getLogger(__name__)

cfg = get_config()

Enqueue = Callable[[Dispatch], None]


def sweep_stale_jobs(now: Optional[datetime] = None, limit: int = None) -> Dict[str, List[str]]:
    """
    Recover jobs whose worker stopped heartbeating. Returns job ids grouped
    by the action taken.
    """
    now = now or utcnow()
    limit = limit or cfg.MAX_JOBS_PER_RUN
    stale_before = now - timedelta(seconds=cfg.STALE_HEARTBEAT_SECONDS)
    outcome = {action.value: [] for action in RecoveryAction}

    for job in job_repository.find_stale_jobs(stale_before, now, limit):
        plan = plan_recovery(job)
        if apply_recovery(job, plan):
            outcome[plan.action.value].append(job["job_id"])
            logger.warning(
                "Watchdog: job %s in %s -> %s (%s)",
                job["job_id"], job.get("stage"), plan.action.value, plan.error,
            )
    return outcome


def dispatch_pending_jobs(enqueue: Enqueue, limit: int = None) -> List[str]:
    """
    Hand pending jobs to their stage worker. A job waiting for
    transcription that already has transcripts goes straight to evaluation.
    """
    limit = limit or cfg.MAX_JOBS_PER_RUN
    dispatched = []
    for stage in PENDING_STAGE_WORKER:
        for job in job_repository.find_pending_jobs([stage], limit):
            if job["job_id"] in dispatched:
                continue
            target = stage
            if stage == JobStage.PENDING_TRANSCRIPTION.value and job.get("transcription_result"):
                if not job_repository.advance_to_evaluation(job["job_id"]):
                    continue
                target = JobStage.PENDING_EVAL.value
            enqueue(Dispatch(job["job_id"], target))
            dispatched.append(job["job_id"])
    if dispatched:
        logger.info("Watchdog dispatched %d pending jobs", len(dispatched))
    return dispatched


def roll_over_quota(today: Optional[str] = None) -> int:
    """Clear exhaustion flags dated before ``today``."""
    cleared = credential_repository.reset_stale_exhaustion(today or today_utc())
    if cleared:
        logger.info("Cleared stale quota flags on %d credentials", cleared)
    return cleared


def run_watchdog(enqueue: Enqueue, now: Optional[datetime] = None) -> Dict:
    """One full watchdog pass."""
    recovered = sweep_stale_jobs(now)
    dispatched = dispatch_pending_jobs(enqueue)
    cleared = roll_over_quota()
    return {
        "recovered": recovered,
        "dispatched": dispatched,
        "quota_flags_cleared": cleared,
    }
