from datetime import timedelta

from commons import utcnow
from src.database import credential_repository, job_repository
from src.jobs.models import Dispatch
from src.jobs.watchdog import dispatch_pending_jobs, roll_over_quota, run_watchdog, sweep_stale_jobs


def _stall(db, job_id, stage, retry_count, now):
    db.speaking_jobs.update_one(
        {"job_id": job_id},
        {"$set": {
            "status": "processing",
            "stage": stage,
            "retry_count": retry_count,
            "heartbeat_at": now - timedelta(minutes=10),
            "lock_token": None,
            "lock_expires_at": None,
        }},
    )


def test_stale_evaluation_is_retried_then_failed(db, make_job) -> None:
    now = utcnow()
    make_job(status="processing", stage="evaluating", retry_count=2,
             heartbeat_at=now - timedelta(minutes=10), lock_token="dead-worker",
             lock_expires_at=now + timedelta(minutes=1))

    outcome = sweep_stale_jobs(now)

    assert outcome["retry"] == ["job_000000000001"]
    job = job_repository.get_job("job_000000000001")
    assert job["status"] == "pending"
    assert job["stage"] == "pending_eval"
    assert job["retry_count"] == 3
    assert job["lock_token"] is None
    assert job["last_error"] == "Watchdog: reset stale job from evaluating stage"

    _stall(db, "job_000000000001", "evaluating", 3, now)
    outcome = sweep_stale_jobs(now)

    assert outcome["fail"] == ["job_000000000001"]
    job = job_repository.get_job("job_000000000001")
    assert job["status"] == "failed"
    assert "after 4 attempts" in job["last_error"]


def test_exhausted_transcription_switches_provider_once(db, make_job) -> None:
    now = utcnow()
    make_job()
    _stall(db, "job_000000000001", "transcribing", 3, now)

    outcome = sweep_stale_jobs(now)

    assert outcome["switch_provider"] == ["job_000000000001"]
    job = job_repository.get_job("job_000000000001")
    assert job["provider"] == "openai"
    assert job["provider_history"] == ["groq", "openai"]
    assert job["retry_count"] == 0
    assert job["stage"] == "pending_transcription"

    _stall(db, "job_000000000001", "transcribing", 3, now)
    outcome = sweep_stale_jobs(now)

    assert outcome["fail"] == ["job_000000000001"]


def test_live_jobs_are_left_alone(make_job) -> None:
    now = utcnow()
    make_job(status="processing", stage="transcribing", heartbeat_at=now,
             lock_token="alive", lock_expires_at=now + timedelta(minutes=5))

    outcome = sweep_stale_jobs(now)

    assert all(not ids for ids in outcome.values())
    assert job_repository.get_job("job_000000000001")["lock_token"] == "alive"


def test_dispatch_pending_jobs_skips_transcription_when_transcripts_exist(make_job) -> None:
    make_job("job_000000000001", transcription_result={"provider": "groq", "segments": []})
    make_job("job_000000000002")
    make_job("job_000000000003", status="processing", stage="transcribing")
    enqueued = []

    dispatched = dispatch_pending_jobs(enqueued.append)

    assert sorted(dispatched) == ["job_000000000001", "job_000000000002"]
    assert len(enqueued) == 2
    assert Dispatch("job_000000000001", "pending_eval") in enqueued
    assert Dispatch("job_000000000002", "pending_transcription") in enqueued
    assert job_repository.get_job("job_000000000001")["stage"] == "pending_eval"


def test_roll_over_quota_clears_only_earlier_days(db) -> None:
    old = credential_repository.add_credential("gemini", "secret-one", "old")
    fresh = credential_repository.add_credential("gemini", "secret-two", "fresh")
    credential_repository.mark_model_exhausted(old["credential_id"], "gemini-2.5-flash", "2026-10-18")
    credential_repository.mark_model_exhausted(fresh["credential_id"], "gemini-2.5-flash", "2026-10-19")

    assert roll_over_quota("2026-10-19") == 1

    old_record = db.api_credentials.find_one({"credential_id": old["credential_id"]})
    fresh_record = db.api_credentials.find_one({"credential_id": fresh["credential_id"]})
    assert old_record["model_quota"] == {}
    assert fresh_record["model_quota"]["gemini-2_5-flash"]["exhausted"] is True


def test_run_watchdog_reports_each_sweep(make_job) -> None:
    make_job()
    enqueued = []

    summary = run_watchdog(enqueued.append)

    assert summary["dispatched"] == ["job_000000000001"]
    assert set(summary["recovered"]) == {"retry", "switch_provider", "fail"}
    assert summary["quota_flags_cleared"] == 0
