"""
Speaking evaluation job API routes.

Endpoints:
    POST   /api/speaking/jobs                   — submit recorded segments
    GET    /api/speaking/jobs/{job_id}          — poll job status
    GET    /api/speaking/jobs                   — list the caller's jobs
    POST   /api/speaking/jobs/{job_id}/cancel   — cancel an unfinished job
    POST   /api/speaking/jobs/{job_id}/retry    — resubmit a failed/cancelled job
    GET    /api/speaking/results/{result_id}    — fetch a stored evaluation
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from commons import generate_job_id, limiter
from configs.config import get_config
from security import (
    safe_error_response,
    validate_file_paths,
    validate_job_id,
    validate_result_id,
    validate_test_id,
)
from src.auth.tokens import get_current_user
from src.database import job_repository, result_repository
from src.jobs.models import Dispatch, JobStage, JobStatus
from src.jobs.tasks import enqueue_stage

logger = logging.getLogger(__name__)

cfg = get_config()

router = APIRouter(prefix="/api/speaking", tags=["speaking"])


class SubmitJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_id: Optional[str] = Field(default=None, alias="testId", max_length=64)
    file_paths: Optional[Dict[str, str]] = Field(default=None, alias="filePaths")
    durations: Dict[str, float] = Field(default_factory=dict)
    topic: Optional[str] = Field(default=None, max_length=200)
    difficulty: Optional[str] = Field(default=None, max_length=50)
    fluency_flag: bool = Field(default=False, alias="fluencyFlag")
    evaluation_mode: str = Field(
        default="accuracy", alias="evaluationMode", pattern=r"^(accuracy|basic)$"
    )


def job_status_view(job: Dict) -> Dict:
    """Public view of a job document."""
    return {
        "jobId": job["job_id"],
        "testId": job.get("test_id"),
        "status": job.get("status"),
        "stage": job.get("stage"),
        "provider": job.get("provider"),
        "resultId": job.get("result_id"),
        "lastError": job.get("last_error"),
        "retryCount": job.get("retry_count", 0),
        "maxRetries": job.get("max_retries"),
        "createdAt": job.get("created_at"),
        "updatedAt": job.get("updated_at"),
        "completedAt": job.get("completed_at"),
    }


def dispatch_stage(dispatch: Dispatch) -> None:
    """
    Enqueue a stage once the response has been sent. A failed enqueue
    leaves the job pending for the watchdog sweep.
    """
    try:
        enqueue_stage(dispatch)
    except Exception as exc:
        logger.error("Job %s enqueue failed: %s", dispatch.job_id, exc, exc_info=True)


# ── Submit ───────────────────────────────────────────────────────────────


@router.post("/jobs", status_code=202)
@limiter.limit("10/minute")
async def submit_job(
    request: Request,
    body: SubmitJobRequest,
    background_tasks: BackgroundTasks = BackgroundTasks(),
    current_user: dict = Depends(get_current_user),
):
    """Create an evaluation job and queue its transcription stage."""
    if not body.test_id or not body.file_paths:
        raise HTTPException(status_code=400, detail="Missing testId or filePaths")
    validate_test_id(body.test_id)
    validate_file_paths(body.file_paths)

    job_id = generate_job_id()
    try:
        job_repository.create_job(
            job_id,
            current_user["email"],
            {
                "test_id": body.test_id,
                "file_paths": body.file_paths,
                "durations": body.durations,
                "topic": body.topic,
                "difficulty": body.difficulty,
                "fluency_flag": body.fluency_flag,
                "evaluation_mode": body.evaluation_mode,
            },
        )
    except Exception as exc:
        safe_error_response(exc, context="submit_job")

    logger.info(
        "Job %s submitted by %s for test %s (%d segments)",
        job_id, current_user["email"], body.test_id, len(body.file_paths),
    )

    background_tasks.add_task(dispatch_stage, Dispatch(job_id, JobStage.PENDING_TRANSCRIPTION.value))

    return JSONResponse(
        status_code=202,
        content={"jobId": job_id, "status": JobStatus.PENDING.value},
    )


# ── Status ───────────────────────────────────────────────────────────────


@router.get("/jobs/{job_id}")
@limiter.limit("60/minute")
async def get_job_status(
    request: Request,
    job_id: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Poll the status of one of the caller's jobs."""
    validate_job_id(job_id)
    job = job_repository.get_job(job_id, user_email=current_user["email"])
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_status_view(job)


@router.get("/jobs")
@limiter.limit("30/minute")
async def list_jobs(
    request: Request,
    status: Optional[str] = Query(default=None, pattern=r"^[a-z_]{1,20}$"),
    current_user: dict = Depends(get_current_user),
) -> dict:
    """List the caller's jobs, newest first."""
    jobs = job_repository.get_all_jobs(current_user["email"], status=status)
    return {"jobs": [job_status_view(job) for job in jobs], "count": len(jobs)}


# ── Lifecycle ────────────────────────────────────────────────────────────


@router.post("/jobs/{job_id}/cancel")
@limiter.limit("10/minute")
async def cancel_job(
    request: Request,
    job_id: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Cancel a job that has not finished yet."""
    validate_job_id(job_id)
    if not job_repository.cancel_job(job_id, user_email=current_user["email"]):
        raise HTTPException(
            status_code=404, detail="Job not found or already finished"
        )
    return {"jobId": job_id, "status": JobStatus.CANCELLED.value}


@router.post("/jobs/{job_id}/retry")
@limiter.limit("5/minute")
async def retry_job(
    request: Request,
    job_id: str,
    background_tasks: BackgroundTasks = BackgroundTasks(),
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Resubmit a failed or cancelled job; a stored transcription is reused."""
    validate_job_id(job_id)
    try:
        job = job_repository.resubmit_job(job_id, current_user["email"])
    except Exception as exc:
        safe_error_response(exc, context="retry_job")
    if not job:
        raise HTTPException(
            status_code=404, detail="Job not found or not failed/cancelled"
        )

    background_tasks.add_task(dispatch_stage, Dispatch(job_id, job["stage"]))

    return {"jobId": job_id, "status": job["status"], "stage": job["stage"]}


# ── Results ──────────────────────────────────────────────────────────────


@router.get("/results/{result_id}")
@limiter.limit("60/minute")
async def get_result(
    request: Request,
    result_id: str,
    current_user: dict = Depends(get_current_user),
) -> dict:
    """Fetch a stored evaluation owned by the caller."""
    validate_result_id(result_id)
    result = result_repository.get_result(result_id, user_email=current_user["email"])
    if not result:
        raise HTTPException(status_code=404, detail="Result not found")
    return result
