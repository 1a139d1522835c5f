from src.quota.classifier import (
    QuotaErrorClassifier,
    QuotaExhaustedError,
    QuotaSignal,
    RateLimitedError,
    extract_retry_after_seconds,
)
from src.quota.pool import QuotaPool

TODAY = "2026-10-19"
YESTERDAY = "2026-10-18"

MODELS = ["gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.5-pro"]


def _record(credential_id, error_count=0, **quota):
    return {
        "credential_id": credential_id,
        "provider": "gemini",
        "secret": f"secret-{credential_id}",
        "error_count": error_count,
        "model_quota": quota,
    }


def _pool(records, marked=None):
    marked = marked if marked is not None else []
    return QuotaPool(
        "gemini",
        loader=lambda provider: [dict(r) for r in records],
        marker=lambda cred, model, day: marked.append((cred, model, day)) or True,
        resetter=lambda cred, model: True,
        error_counter=lambda cred: True,
        today=lambda: TODAY,
    )


# ── Classifier ───────────────────────────────────────────────────────────


def test_retry_after_is_parsed_from_both_provider_formats() -> None:
    assert extract_retry_after_seconds('{"retryDelay": "56s"}') == 56
    assert extract_retry_after_seconds("Please retry in 12.3s.") == 13
    assert extract_retry_after_seconds("nothing here") is None


def test_billing_and_daily_wording_is_permanent() -> None:
    classifier = QuotaErrorClassifier()
    assert classifier.classify("You exceeded your current quota, please check your plan") is QuotaSignal.PERMANENT
    assert classifier.classify("Quota exceeded for requests per day") is QuotaSignal.PERMANENT
    assert classifier.classify("limit: 0, model gemini-2.5-pro") is QuotaSignal.PERMANENT


def test_rate_limit_with_retry_hint_is_transient() -> None:
    classifier = QuotaErrorClassifier()
    error = classifier.to_exception("Rate limit reached. Please retry in 7s", status_code=429, model="m")
    assert isinstance(error, RateLimitedError)
    assert error.retry_after == 7
    assert error.model == "m"


def test_unknown_quota_errors_follow_the_configured_default() -> None:
    assert isinstance(
        QuotaErrorClassifier().to_exception("Too many requests", status_code=429),
        QuotaExhaustedError,
    )
    assert isinstance(
        QuotaErrorClassifier(unknown_is_permanent=False).to_exception("Too many requests", status_code=429),
        RateLimitedError,
    )


def test_non_quota_errors_are_not_classified() -> None:
    classifier = QuotaErrorClassifier()
    assert classifier.classify("Internal server error", status_code=500) is QuotaSignal.NONE
    assert classifier.to_exception("Bad request", status_code=400) is None


# ── Pool ─────────────────────────────────────────────────────────────────


def test_exhaustion_only_counts_when_dated_today() -> None:
    pool = _pool([
        _record("cred_a", **{"gemini-2_5-pro": {"exhausted": True, "exhausted_date": TODAY}}),
        _record("cred_b", **{"gemini-2_5-pro": {"exhausted": True, "exhausted_date": YESTERDAY}}),
    ])
    first, second = pool.credentials
    assert pool.is_exhausted(first, "gemini-2.5-pro")
    assert not pool.is_exhausted(second, "gemini-2.5-pro")


def test_model_exhaustion_leaves_other_models_eligible() -> None:
    pool = _pool([
        _record("cred_a", **{"gemini-2_5-pro": {"exhausted": True, "exhausted_date": TODAY}}),
    ])
    assert [c.credential_id for c in pool.eligible(["gemini-2.0-flash"])] == ["cred_a"]
    assert pool.eligible(["gemini-2.5-pro"]) == []
    assert pool.usable_models(pool.credentials[0], MODELS) == ["gemini-2.5-flash", "gemini-2.0-flash"]


def test_checkout_walks_credentials_by_error_count_then_stops() -> None:
    pool = _pool([_record("cred_busy", error_count=5), _record("cred_quiet", error_count=0)])
    assert pool.checkout(MODELS).credential_id == "cred_quiet"
    assert pool.checkout(MODELS).credential_id == "cred_busy"
    assert pool.checkout(MODELS) is None
    pool.rewind()
    assert pool.checkout(MODELS).credential_id == "cred_quiet"


def test_mark_exhausted_persists_and_skips_the_pair_in_the_same_run() -> None:
    marked = []
    pool = _pool([_record("cred_a"), _record("cred_b")], marked)
    credential = pool.checkout(["gemini-2.5-pro"])
    pool.mark_exhausted(credential.credential_id, "gemini-2.5-pro")
    assert marked == [("cred_a", "gemini-2.5-pro", TODAY)]
    assert pool.is_exhausted(pool.credentials[0], "gemini-2.5-pro")
    assert pool.checkout(["gemini-2.5-pro"]).credential_id == "cred_b"


def test_reset_clears_local_flags() -> None:
    pool = _pool([_record("cred_a", **{"gemini-2_5-pro": {"exhausted": True, "exhausted_date": TODAY}})])
    pool.rewind()
    pool.reset("cred_a", "gemini-2.5-pro")
    assert not pool.is_exhausted(pool.credentials[0], "gemini-2.5-pro")
