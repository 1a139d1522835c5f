"""
Data models for the speaking evaluation job lifecycle.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class JobStatus(str, Enum):
    """Coarse status visible to the job owner."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStage(str, Enum):
    """Pipeline position of a job."""

    PENDING_TRANSCRIPTION = "pending_transcription"
    TRANSCRIBING = "transcribing"
    PENDING_EVAL = "pending_eval"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkerKind(str, Enum):
    TRANSCRIPTION = "transcription"
    EVALUATION = "evaluation"


TERMINAL_STATUSES: FrozenSet[str] = frozenset(
    {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
)

# Stages each worker may pick a job up from, and the stage it moves it to.
CLAIMABLE_STAGES = {
    WorkerKind.TRANSCRIPTION: (
        JobStage.PENDING_TRANSCRIPTION.value,
        JobStage.TRANSCRIBING.value,
    ),
    WorkerKind.EVALUATION: (
        JobStage.PENDING_EVAL.value,
        JobStage.EVALUATING.value,
    ),
}
WORKING_STAGE = {
    WorkerKind.TRANSCRIPTION: JobStage.TRANSCRIBING.value,
    WorkerKind.EVALUATION: JobStage.EVALUATING.value,
}
PENDING_STAGE_WORKER = {
    JobStage.PENDING_TRANSCRIPTION.value: WorkerKind.TRANSCRIPTION,
    JobStage.PENDING_EVAL.value: WorkerKind.EVALUATION,
}


def retry_safe_stage(stage: str) -> str:
    """
    Nearest stage a stuck job can safely restart from.

    Evaluation keeps the stored transcription; anything earlier starts the
    transcription over.
    """
    if stage in (JobStage.EVALUATING.value, JobStage.PENDING_EVAL.value):
        return JobStage.PENDING_EVAL.value
    return JobStage.PENDING_TRANSCRIPTION.value


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass
class Dispatch:
    """A stage the job should be handed to next, optionally after a delay."""

    job_id: str
    stage: str
    countdown: Optional[int] = None
