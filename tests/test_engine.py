import pytest

from src.evaluation.engine import EvaluationEngine, assemble_result
from src.evaluation.models import (
    EvaluationError,
    InvalidOutput,
    ProviderError,
    QuotaExhausted,
    RateLimited,
    Success,
)
from src.asr.metrics import PronunciationEstimate
from src.quota.pool import QuotaPool

from helpers import audio_segment, evaluator_payload, merged_transcript

TODAY = "2026-10-19"

SEGMENTS = [audio_segment("part1-q1", part=1, question=1), audio_segment("part2-q1", part=2, question=1)]
TRANSCRIPTS = {
    "part1-q1": merged_transcript("part1-q1", "I live in a quiet town near the coast", part=1),
    "part2-q1": merged_transcript("part2-q1", "I want to describe my favourite teacher from school", part=2),
}


class ScriptedEvaluator:
    def __init__(self, outcomes):
        self.outcomes = {key: list(value) for key, value in outcomes.items()}
        self.calls = []

    def attempt(self, credential, model, prompt, expected_answers):
        self.calls.append((credential.credential_id, model))
        queue = self.outcomes.get((credential.credential_id, model)) or []
        return queue.pop(0) if queue else InvalidOutput(issues=["no scripted outcome"])


def _pool(credential_ids, marked=None, errors=None):
    marked = marked if marked is not None else []
    errors = errors if errors is not None else []
    records = [
        {"credential_id": cid, "provider": "gemini", "secret": f"s-{cid}", "error_count": 0, "model_quota": {}}
        for cid in credential_ids
    ]
    return QuotaPool(
        "gemini",
        loader=lambda provider: [dict(r, model_quota={}) for r in records],
        marker=lambda cred, model, day: marked.append((cred, model)) or True,
        resetter=lambda cred, model: True,
        error_counter=lambda cred: errors.append(cred) or True,
        today=lambda: TODAY,
    )


def _engine(pool, evaluator, models, sleeps=None, checkpoint=lambda: None):
    sleeps = sleeps if sleeps is not None else []
    return EvaluationEngine(pool, evaluator=evaluator, models=models,
                            checkpoint=checkpoint, sleep=sleeps.append)


def test_quota_exhaustion_marks_the_pair_and_tries_the_next_model() -> None:
    marked = []
    evaluator = ScriptedEvaluator({
        ("cred_a", "m1"): [QuotaExhausted("daily quota")],
        ("cred_a", "m2"): [Success(payload=evaluator_payload(SEGMENTS))],
    })
    result = _engine(_pool(["cred_a"], marked), evaluator, ["m1", "m2"]).evaluate(SEGMENTS, TRANSCRIPTS)

    assert marked == [("cred_a", "m1")]
    assert evaluator.calls == [("cred_a", "m1"), ("cred_a", "m2")]
    assert result.metadata["model"] == "m2"
    assert result.metadata["credential_id"] == "cred_a"


def test_repeated_rate_limit_rotates_to_the_next_credential() -> None:
    sleeps = []
    marked = []
    evaluator = ScriptedEvaluator({
        ("cred_a", "m1"): [RateLimited(retry_after=3), RateLimited(retry_after=3)],
        ("cred_b", "m1"): [Success(payload=evaluator_payload(SEGMENTS))],
    })
    result = _engine(_pool(["cred_a", "cred_b"], marked), evaluator, ["m1"], sleeps).evaluate(
        SEGMENTS, TRANSCRIPTS
    )

    assert sleeps == [3.0]
    assert marked == []
    assert result.metadata["credential_id"] == "cred_b"


def test_invalid_output_everywhere_raises_with_the_last_issue() -> None:
    evaluator = ScriptedEvaluator({
        ("cred_a", "m1"): [InvalidOutput(issues=["bad json"])],
        ("cred_a", "m2"): [InvalidOutput(issues=["bad json"])],
    })
    with pytest.raises(EvaluationError, match="bad json"):
        _engine(_pool(["cred_a"]), evaluator, ["m1", "m2"]).evaluate(SEGMENTS, TRANSCRIPTS)
    assert len(evaluator.calls) == 2


def test_persistent_provider_errors_are_retried_then_counted() -> None:
    sleeps = []
    errors = []
    evaluator = ScriptedEvaluator({("cred_a", "m1"): [ProviderError("503 unavailable")] * 3})
    with pytest.raises(EvaluationError, match="503 unavailable"):
        _engine(_pool(["cred_a"], errors=errors), evaluator, ["m1"], sleeps).evaluate(
            SEGMENTS, TRANSCRIPTS
        )
    assert len(evaluator.calls) == 3
    assert len(sleeps) == 2
    assert errors == ["cred_a"]


def test_no_credentials_raises() -> None:
    with pytest.raises(EvaluationError):
        _engine(_pool([]), ScriptedEvaluator({}), ["m1"]).evaluate(SEGMENTS, TRANSCRIPTS)


def test_checkpoint_runs_before_each_call_and_can_abort() -> None:
    class Stop(Exception):
        pass

    def checkpoint():
        raise Stop()

    evaluator = ScriptedEvaluator({})
    with pytest.raises(Stop):
        _engine(_pool(["cred_a"]), evaluator, ["m1"], checkpoint=checkpoint).evaluate(
            SEGMENTS, TRANSCRIPTS
        )
    assert evaluator.calls == []


def test_assemble_result_weights_parts_and_keeps_transcript_views() -> None:
    payload = evaluator_payload(SEGMENTS, band=6.0, answer_band=6.0)
    payload["modelAnswers"][1]["estimatedBand"] = 7.0
    result = assemble_result(
        payload, SEGMENTS, TRANSCRIPTS, PronunciationEstimate(6.0, "medium"), {"model": "m1"}
    )

    # (6 * 1 + 7 * 2) / 3 = 6.67
    assert result.overall_band == 6.5
    assert result.metadata["criteria_band"] == 6.0
    assert result.metadata["transcription_confidence"] == {"high": 2}
    assert result.transcripts_by_part == {
        "1": "I live in a quiet town near the coast",
        "2": "I want to describe my favourite teacher from school",
    }
    assert result.transcripts_by_question["2"][0]["segment_key"] == "part2-q1"
    assert [a["segment_key"] for a in result.model_answers] == ["part1-q1", "part2-q1"]
    document = result.to_document()
    assert document["evaluation_metadata"]["model"] == "m1"
    assert document["criteria"]["pronunciation"]["band"] == 6.0


def test_missing_model_answers_are_left_blank() -> None:
    payload = evaluator_payload(SEGMENTS[:1])
    result = assemble_result(payload, SEGMENTS, TRANSCRIPTS, PronunciationEstimate(6.0, "low"), {})
    assert result.model_answers[1]["modelAnswer"] == ""
    assert "estimatedBand" not in result.model_answers[1]
