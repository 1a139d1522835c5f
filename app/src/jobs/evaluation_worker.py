"""
Evaluation stage worker.

Claims a job at ``pending_eval``, evaluates its stored transcripts and
writes the result exactly once. Running it again for a job that already
has a result only re-links the job to that result.
"""

import logging
from typing import Callable, Dict, Optional

from configs.config import get_config
from src.asr.models import MergedTranscript
from src.asr.segments import build_segments
from src.database import catalogue_repository, job_repository, result_repository
from src.evaluation.engine import EvaluationEngine
from src.jobs.locking import JobCancelledError, JobLock, LockLostError
from src.jobs.models import Dispatch, JobStage, WorkerKind
from src.jobs.recovery import recover_failed_stage
from src.quota.pool import QuotaPool

logger = logging.getLogger(__name__)

cfg = get_config()


def _default_engine(checkpoint: Callable[[], None]) -> EvaluationEngine:
    return EvaluationEngine(QuotaPool(cfg.LLM_PROVIDER), checkpoint=checkpoint)


def build_result_document(job: Dict, evaluation) -> Dict:
    document = evaluation.to_document()
    document["evaluation_metadata"].update({
        "asr_provider": (job.get("transcription_result") or {}).get("provider"),
        "fluency_flag": job.get("fluency_flag", False),
        "topic": job.get("topic"),
        "difficulty": job.get("difficulty"),
    })
    document.update({
        "job_id": job["job_id"],
        "user_email": job["user_email"],
        "test_id": job["test_id"],
    })
    return document


def evaluate_job(job: Dict, checkpoint: Callable[[], None],
                 engine_factory: Callable[[Callable[[], None]], EvaluationEngine] = _default_engine) -> Dict:
    """Evaluate a job's stored transcripts; returns the result document."""
    stored = job["transcription_result"]["segments"]
    transcripts = {d["segment_key"]: MergedTranscript.from_document(d) for d in stored}
    payload = catalogue_repository.get_test_payload(job["test_id"])
    segments = [
        s for s in build_segments(job["file_paths"], payload, job.get("durations"))
        if s.segment_key in transcripts
    ]
    engine = engine_factory(checkpoint)
    evaluation = engine.evaluate(
        segments,
        transcripts,
        topic=job.get("topic") or (payload or {}).get("topic"),
        difficulty=job.get("difficulty") or (payload or {}).get("difficulty"),
        evaluation_mode=job.get("evaluation_mode") or "accuracy",
    )
    return build_result_document(job, evaluation)


def run_evaluation_stage(job_id: str,
                         engine_factory: Callable[[Callable[[], None]], EvaluationEngine] = _default_engine
                         ) -> Optional[Dispatch]:
    """
    Run the evaluation stage for ``job_id``. Returns a retry dispatch when
    the stage should run again, otherwise None.
    """
    lock = JobLock(job_id, WorkerKind.EVALUATION)
    job = lock.claim()
    if job is None:
        return None

    try:
        existing = result_repository.get_result_for_job(job_id)
        if existing:
            logger.info("Job %s already has result %s", job_id, existing["result_id"])
            lock.stop()
            job_repository.complete_job(job_id, lock.token, existing["result_id"])
            return None

        if not (job.get("transcription_result") or {}).get("segments"):
            logger.warning("Job %s reached evaluation without transcripts", job_id)
            lock.stop()
            job_repository.reset_job_for_retry(
                job_id,
                JobStage.PENDING_TRANSCRIPTION.value,
                job.get("retry_count") or 0,
                "Missing transcription result",
                expected={"lock_token": lock.token},
            )
            return Dispatch(job_id, JobStage.PENDING_TRANSCRIPTION.value)

        document = evaluate_job(job, lock.checkpoint, engine_factory)
        lock.checkpoint()
        result_id = result_repository.insert_result_once(job_id, document)
        lock.stop()
        if not job_repository.complete_job(job_id, lock.token, result_id):
            raise LockLostError(f"Job {job_id} lock lost before completion")
        job_repository.cancel_superseded_jobs(job["user_email"], job["test_id"], job_id)
        return None

    except JobCancelledError:
        logger.info("Job %s cancelled during evaluation", job_id)
        lock.release()
        return None
    except LockLostError as exc:
        logger.warning("%s; abandoning evaluation", exc)
        lock.stop()
        return None
    except Exception as exc:
        logger.error("Job %s evaluation failed: %s", job_id, exc, exc_info=True)
        lock.stop()
        return recover_failed_stage(job_id, lock.token, exc)
    finally:
        lock.stop()
