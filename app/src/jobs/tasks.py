"""
Celery application and stage tasks.

Stages are dispatched by enqueueing a task on the broker. Tasks are
acknowledged late, so a worker that dies mid-stage leaves the message to
be redelivered; the job lock makes a duplicate delivery a no-op. A
``memory://`` broker runs tasks eagerly in-process and is accepted in
development only.
"""

import logging
from typing import Optional

from celery import Celery, signals

from configs.config import get_config
from logging_config import setup_logging
from src.jobs.evaluation_worker import run_evaluation_stage
from src.jobs.models import PENDING_STAGE_WORKER, Dispatch, WorkerKind
from src.jobs.transcription_worker import run_transcription_stage
from src.jobs.watchdog import roll_over_quota, run_watchdog

logger = logging.getLogger(__name__)

cfg = get_config()

celery_app = Celery(
    "speaking_eval",
    broker=cfg.CELERY_BROKER_URL,
    backend=cfg.CELERY_RESULT_BACKEND,
)
celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,
    timezone="UTC",
    beat_schedule={
        "watchdog-sweep": {
            "task": "speaking.watchdog_sweep",
            "schedule": float(cfg.WATCHDOG_INTERVAL_SECONDS),
        },
        "quota-rollover": {
            "task": "speaking.quota_rollover",
            "schedule": 3600.0,
        },
    },
)


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    setup_logging(prefix="worker")


def eager_mode(broker_url: str, environment: str) -> bool:
    """True when stages run in-process; a ``memory://`` broker outside development is refused."""
    if not broker_url.startswith("memory"):
        return False
    if environment != "development":
        raise RuntimeError(
            f"CELERY_BROKER_URL={broker_url} is only allowed in development; "
            f"configure a real broker for {environment}"
        )
    return True


if eager_mode(cfg.CELERY_BROKER_URL, cfg.ENVIRONMENT):
    celery_app.conf.update(task_always_eager=True)
    logger.info("[celery] EAGER mode ON (memory broker): stages run in-process")
else:
    logger.info("[celery] BROKER=%s", cfg.CELERY_BROKER_URL)


def enqueue_stage(dispatch: Optional[Dispatch]) -> None:
    """Put ``dispatch`` on the queue of the worker that owns its stage."""
    if dispatch is None:
        return
    worker = PENDING_STAGE_WORKER.get(dispatch.stage)
    if worker is None:
        logger.warning("Job %s: nothing to dispatch at stage %s", dispatch.job_id, dispatch.stage)
        return
    task = run_transcription if worker is WorkerKind.TRANSCRIPTION else run_evaluation
    task.apply_async(args=[dispatch.job_id], countdown=dispatch.countdown)
    logger.info("Job %s enqueued for %s", dispatch.job_id, worker.value)


@celery_app.task(name="speaking.run_transcription", acks_late=True)
def run_transcription(job_id: str):
    enqueue_stage(run_transcription_stage(job_id))


@celery_app.task(name="speaking.run_evaluation", acks_late=True)
def run_evaluation(job_id: str):
    enqueue_stage(run_evaluation_stage(job_id))


@celery_app.task(name="speaking.watchdog_sweep")
def watchdog_sweep():
    summary = run_watchdog(enqueue_stage)
    logger.info("Watchdog summary: %s", summary)
    return summary


@celery_app.task(name="speaking.quota_rollover")
def quota_rollover():
    return roll_over_quota()
