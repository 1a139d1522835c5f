from src.database import job_repository
from src.jobs import recovery
from src.jobs.recovery import RecoveryAction, plan_recovery, recover_failed_stage


def _job(**fields):
    job = {
        "job_id": "job_000000000001",
        "stage": "transcribing",
        "provider": "groq",
        "provider_history": ["groq"],
        "retry_count": 0,
        "max_retries": 3,
    }
    job.update(fields)
    return job


def test_retry_moves_back_to_the_safe_stage() -> None:
    plan = plan_recovery(_job(stage="evaluating", retry_count=1))

    assert plan.action is RecoveryAction.RETRY
    assert plan.stage == "pending_eval"
    assert plan.retry_count == 2


def test_transcription_restarts_from_scratch() -> None:
    plan = plan_recovery(_job(stage="transcribing"))
    assert plan.stage == "pending_transcription"


def test_worker_reason_is_kept_in_the_error() -> None:
    plan = plan_recovery(_job(stage="evaluating", retry_count=3), reason="EvaluationError: no quota")

    assert plan.action is RecoveryAction.FAIL
    assert plan.error == "EvaluationError: no quota (gave up after 4 attempts)"


def test_provider_switch_needs_an_unused_fallback() -> None:
    assert plan_recovery(_job(retry_count=3)).action is RecoveryAction.SWITCH_PROVIDER
    assert plan_recovery(
        _job(retry_count=3, provider="openai", provider_history=["groq", "openai"])
    ).action is RecoveryAction.FAIL


def test_provider_switch_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setattr(recovery.cfg, "PROVIDER_FALLBACK_ENABLED", False)
    assert plan_recovery(_job(retry_count=3)).action is RecoveryAction.FAIL


def test_recover_failed_stage_redispatches_with_a_delay(make_job) -> None:
    make_job(status="processing", stage="evaluating", lock_token="mine")

    dispatch = recover_failed_stage("job_000000000001", "mine", RuntimeError("boom"))

    assert dispatch.stage == "pending_eval"
    assert dispatch.countdown == recovery.cfg.STAGE_RETRY_COUNTDOWN_SECONDS
    job = job_repository.get_job("job_000000000001")
    assert job["retry_count"] == 1
    assert job["last_error"] == "RuntimeError: boom"


def test_recover_failed_stage_leaves_a_taken_over_job_alone(make_job) -> None:
    make_job(status="processing", stage="evaluating", lock_token="new-owner")

    assert recover_failed_stage("job_000000000001", "old-owner", RuntimeError("boom")) is None
    assert job_repository.get_job("job_000000000001")["retry_count"] == 0
