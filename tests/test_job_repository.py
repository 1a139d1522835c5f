from datetime import timedelta

from commons import utcnow
from src.database import job_repository, result_repository
from src.jobs.models import WorkerKind


def test_create_job_starts_pending_transcription(make_job) -> None:
    job = make_job()

    assert job["status"] == "pending"
    assert job["stage"] == "pending_transcription"
    assert job["provider"] == "groq"
    assert job["provider_history"] == ["groq"]
    assert job["retry_count"] == 0
    assert job["max_retries"] == 3
    assert job["evaluation_mode"] == "accuracy"


def test_claim_job_lock_is_exclusive(make_job) -> None:
    make_job()

    first = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 300)
    second = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 300)

    assert first is not None
    assert first["status"] == "processing"
    assert first["stage"] == "transcribing"
    assert first["lock_token"]
    assert second is None


def test_claim_job_lock_takes_over_an_expired_lock(make_job) -> None:
    make_job()
    past = utcnow() - timedelta(minutes=30)
    first = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 60, now=past)

    second = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 60)

    assert second is not None
    assert second["lock_token"] != first["lock_token"]


def test_claim_job_lock_rejects_the_wrong_worker(make_job) -> None:
    make_job()
    assert job_repository.claim_job_lock("job_000000000001", WorkerKind.EVALUATION, 300) is None


def test_refresh_heartbeat_requires_the_current_token(make_job) -> None:
    make_job()
    job = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 300)

    assert job_repository.refresh_heartbeat("job_000000000001", job["lock_token"], 300) is True
    assert job_repository.refresh_heartbeat("job_000000000001", "someone-else", 300) is False


def test_save_transcription_result_hands_off_to_evaluation(make_job) -> None:
    make_job()
    job = job_repository.claim_job_lock("job_000000000001", WorkerKind.TRANSCRIPTION, 300)

    assert job_repository.save_transcription_result("job_000000000001", "stale-token", {"segments": []}) is False
    assert job_repository.save_transcription_result(
        "job_000000000001", job["lock_token"], {"provider": "groq", "segments": []}
    ) is True

    stored = job_repository.get_job("job_000000000001")
    assert stored["stage"] == "pending_eval"
    assert stored["status"] == "pending"
    assert stored["lock_token"] is None
    assert stored["transcription_result"]["provider"] == "groq"


def test_insert_result_once_is_idempotent(db) -> None:
    first = result_repository.insert_result_once("job_000000000001", {"overall_band": 6.5, "user_email": "a@b.c"})
    second = result_repository.insert_result_once("job_000000000001", {"overall_band": 8.0, "user_email": "a@b.c"})

    assert first == second
    assert db.speaking_results.count_documents({"job_id": "job_000000000001"}) == 1
    stored = result_repository.get_result(first)
    assert stored["overall_band"] == 6.5


def test_get_result_enforces_ownership(db) -> None:
    result_id = result_repository.insert_result_once("job_000000000001", {"user_email": "owner@example.com"})

    assert result_repository.get_result(result_id, user_email="owner@example.com") is not None
    assert result_repository.get_result(result_id, user_email="intruder@example.com") is None


def test_cancel_job_only_touches_unfinished_jobs(make_job) -> None:
    make_job()

    assert job_repository.cancel_job("job_000000000001", "intruder@example.com") is False
    assert job_repository.cancel_job("job_000000000001", "owner@example.com") is True
    assert job_repository.cancel_job("job_000000000001", "owner@example.com") is False
    assert job_repository.is_job_cancelled("job_000000000001") is True


def test_resubmit_job_resumes_at_evaluation_when_transcribed(make_job) -> None:
    make_job(status="failed", stage="failed", retry_count=3,
             last_error="boom", transcription_result={"segments": [{"segment_key": "part1-q1"}]})

    job = job_repository.resubmit_job("job_000000000001", "owner@example.com")

    assert job["status"] == "pending"
    assert job["stage"] == "pending_eval"
    assert job["retry_count"] == 0
    assert job["last_error"] is None


def test_resubmit_job_ignores_running_jobs(make_job) -> None:
    make_job()
    assert job_repository.resubmit_job("job_000000000001", "owner@example.com") is None


def test_find_stale_jobs_uses_heartbeat_age(make_job) -> None:
    now = utcnow()
    make_job("job_000000000001", status="processing", stage="evaluating",
             heartbeat_at=now - timedelta(minutes=10), lock_token="t1",
             lock_expires_at=now + timedelta(minutes=5))
    make_job("job_000000000002", status="processing", stage="evaluating",
             heartbeat_at=now, lock_token="t2", lock_expires_at=now + timedelta(minutes=5))

    stale = job_repository.find_stale_jobs(now - timedelta(minutes=2), now, 10)

    assert [job["job_id"] for job in stale] == ["job_000000000001"]


def test_cancel_superseded_jobs_keeps_the_winner(make_job) -> None:
    make_job("job_000000000001")
    make_job("job_000000000002")
    make_job("job_000000000003", test_id="other-test")

    assert job_repository.cancel_superseded_jobs("owner@example.com", "test-1", "job_000000000002") == 1
    assert job_repository.get_job("job_000000000001")["status"] == "cancelled"
    assert job_repository.get_job("job_000000000002")["status"] == "pending"
    assert job_repository.get_job("job_000000000003")["status"] == "pending"
