import pytest

from src.asr.metrics import PronunciationEstimate
from src.database import job_repository, result_repository
from src.evaluation.engine import assemble_result
from src.evaluation.models import EvaluationError
from src.jobs.evaluation_worker import run_evaluation_stage
from src.jobs.models import Dispatch
from src.jobs.transcription_worker import run_transcription_stage

from helpers import evaluator_payload, merged_transcript

JOB_ID = "job_000000000001"

TRANSCRIBED = {
    "provider": "groq",
    "segments": [
        merged_transcript("part1-q1", "I live in a small flat", part=1).to_document(),
        merged_transcript("part2-q7", "My favourite teacher was patient", part=2, question=7).to_document(),
    ],
}


class FakeEngine:
    def __init__(self, checkpoint):
        self.checkpoint = checkpoint

    def evaluate(self, segments, transcripts, topic=None, difficulty=None, evaluation_mode="accuracy"):
        self.checkpoint()
        return assemble_result(
            evaluator_payload(segments), segments, transcripts,
            PronunciationEstimate(6.0, "medium"), {"model": "fake", "evaluation_mode": evaluation_mode},
        )


def _unused_engine(checkpoint):
    raise AssertionError("engine must not be built")


def _pending_eval_job(make_job, job_id=JOB_ID, **fields):
    return make_job(job_id, stage="pending_eval", transcription_result=TRANSCRIBED, **fields)


# ── Evaluation stage ─────────────────────────────────────────────────────

def test_evaluation_stores_one_result_and_completes(db, make_job) -> None:
    _pending_eval_job(make_job)

    assert run_evaluation_stage(JOB_ID, engine_factory=FakeEngine) is None

    job = job_repository.get_job(JOB_ID)
    assert job["status"] == "completed"
    assert job["stage"] == "completed"
    assert job["lock_token"] is None
    result = result_repository.get_result(job["result_id"], user_email="owner@example.com")
    assert result["job_id"] == JOB_ID
    assert result["test_id"] == "test-1"
    assert result["overall_band"] == 6.0
    assert result["evaluation_metadata"]["asr_provider"] == "groq"
    assert result["transcripts_by_part"]["2"] == "My favourite teacher was patient"


def test_existing_result_is_relinked_without_evaluating(db, make_job) -> None:
    _pending_eval_job(make_job)
    result_id = result_repository.insert_result_once(JOB_ID, {"user_email": "owner@example.com"})

    assert run_evaluation_stage(JOB_ID, engine_factory=_unused_engine) is None

    job = job_repository.get_job(JOB_ID)
    assert job["status"] == "completed"
    assert job["result_id"] == result_id
    assert db.speaking_results.count_documents({"job_id": JOB_ID}) == 1


def test_completed_job_is_not_claimed_again(db, make_job) -> None:
    make_job(status="completed", stage="completed", result_id="res_000000000001")

    assert run_evaluation_stage(JOB_ID, engine_factory=_unused_engine) is None
    assert db.speaking_results.count_documents({}) == 0


def test_success_cancels_superseded_jobs(make_job) -> None:
    _pending_eval_job(make_job)
    make_job("job_000000000002")

    run_evaluation_stage(JOB_ID, engine_factory=FakeEngine)

    assert job_repository.get_job("job_000000000002")["status"] == "cancelled"


def test_evaluation_failure_is_rescheduled(make_job) -> None:
    _pending_eval_job(make_job)

    class FailingEngine(FakeEngine):
        def evaluate(self, *args, **kwargs):
            raise EvaluationError("All evaluator credentials and models failed")

    dispatch = run_evaluation_stage(JOB_ID, engine_factory=FailingEngine)

    assert dispatch.job_id == JOB_ID
    assert dispatch.stage == "pending_eval"
    job = job_repository.get_job(JOB_ID)
    assert job["status"] == "pending"
    assert job["retry_count"] == 1
    assert job["last_error"].startswith("EvaluationError:")


def test_cancellation_during_evaluation_writes_nothing(db, make_job) -> None:
    _pending_eval_job(make_job)

    class CancelledEngine(FakeEngine):
        def evaluate(self, *args, **kwargs):
            job_repository.cancel_job(JOB_ID)
            return super().evaluate(*args, **kwargs)

    assert run_evaluation_stage(JOB_ID, engine_factory=CancelledEngine) is None
    assert job_repository.get_job(JOB_ID)["status"] == "cancelled"
    assert db.speaking_results.count_documents({}) == 0


def test_missing_transcripts_send_the_job_back(make_job) -> None:
    make_job(stage="pending_eval")

    dispatch = run_evaluation_stage(JOB_ID, engine_factory=_unused_engine)

    assert dispatch == Dispatch(JOB_ID, "pending_transcription")
    assert job_repository.get_job(JOB_ID)["stage"] == "pending_transcription"


# ── Transcription stage ──────────────────────────────────────────────────

class FakeTranscriber:
    def __init__(self, provider):
        self.provider = provider
        self.seen = []

    def transcribe(self, segment, audio, filename):
        self.seen.append((segment.segment_key, filename))
        return merged_transcript(
            segment.segment_key, f"answer for {segment.segment_key}",
            part=segment.part_number, question=segment.question_number,
        )


def test_transcription_stores_merged_segments_in_order(make_job) -> None:
    make_job(file_paths={
        "part2-q7": "audio/owner/part2-q7.webm",
        "part1-q1": "audio/owner/part1-q1.webm",
    })
    transcribers = []

    def factory(provider):
        transcribers.append(FakeTranscriber(provider))
        return transcribers[-1]

    dispatch = run_transcription_stage(
        JOB_ID, transcriber_factory=factory, read_audio=lambda ref: b"x" * 64, sleep=lambda s: None
    )

    assert dispatch == Dispatch(JOB_ID, "pending_eval")
    assert transcribers[0].seen == [("part1-q1", "part1-q1.webm"), ("part2-q7", "part2-q7.webm")]
    job = job_repository.get_job(JOB_ID)
    assert job["stage"] == "pending_eval"
    assert job["status"] == "pending"
    stored = job["transcription_result"]
    assert stored["provider"] == "groq"
    assert [s["segment_key"] for s in stored["segments"]] == ["part1-q1", "part2-q7"]


def test_transcription_uses_the_jobs_provider(make_job) -> None:
    make_job(provider="openai")
    providers = []

    def factory(provider):
        providers.append(provider)
        return FakeTranscriber(provider)

    run_transcription_stage(JOB_ID, transcriber_factory=factory,
                            read_audio=lambda ref: b"x" * 64, sleep=lambda s: None)

    assert providers == ["openai"]


def test_segments_are_spaced_by_the_inter_segment_delay(make_job) -> None:
    make_job()
    sleeps = []

    run_transcription_stage(JOB_ID, transcriber_factory=FakeTranscriber,
                            read_audio=lambda ref: b"x" * 64, sleep=sleeps.append)

    assert sleeps == [0.5]


def test_unreadable_audio_is_rescheduled(make_job) -> None:
    make_job()

    def missing(ref):
        raise FileNotFoundError(ref)

    dispatch = run_transcription_stage(JOB_ID, transcriber_factory=FakeTranscriber,
                                       read_audio=missing, sleep=lambda s: None)

    assert dispatch.stage == "pending_transcription"
    job = job_repository.get_job(JOB_ID)
    assert job["retry_count"] == 1
    assert job["transcription_result"] is None


@pytest.mark.parametrize("status", ["cancelled", "failed"])
def test_finished_jobs_are_not_transcribed(make_job, status) -> None:
    make_job(status=status, stage=status)
    assert run_transcription_stage(JOB_ID, transcriber_factory=FakeTranscriber) is None
