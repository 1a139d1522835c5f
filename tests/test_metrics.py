import pytest

from src.asr.metrics import (
    estimate_pronunciation,
    extract_filler_words,
    extract_metrics,
    validate_word_count,
)
from src.asr.models import AsrResponse, AsrSegment

from helpers import merged_transcript


def test_extract_metrics_averages_and_finds_long_pauses() -> None:
    response = AsrResponse(
        model="whisper-large-v3",
        text="first part second part third part",
        duration=12.0,
        segments=[
            AsrSegment(start=0.0, end=2.0, avg_logprob=-0.2, no_speech_prob=0.1),
            AsrSegment(start=2.5, end=4.0, avg_logprob=-0.4, no_speech_prob=0.3),
            AsrSegment(start=7.0, end=9.0, avg_logprob=None, no_speech_prob=None),
        ],
    )
    metrics = extract_metrics(response)
    assert metrics.avg_logprob == pytest.approx(-0.3)
    assert metrics.no_speech_prob == pytest.approx(0.2)
    assert len(metrics.long_pauses) == 1
    assert metrics.long_pauses[0].start == 4.0
    assert metrics.long_pauses[0].duration == pytest.approx(3.0)
    assert metrics.avg_confidence == pytest.approx(0.7)


def test_extract_metrics_without_segments_uses_defaults() -> None:
    metrics = extract_metrics(AsrResponse(model="m", text="hello", segments=[]))
    assert metrics.avg_logprob == -1.0
    assert metrics.no_speech_prob == 0.0
    assert metrics.long_pauses == []


def test_extract_filler_words_counts_each_occurrence() -> None:
    fillers = extract_filler_words("Um, I mean, it was, uh, like, um, you know, fine")
    assert fillers.count("um") == 2
    assert "uh" in fillers
    assert "i mean" in fillers
    assert "you know" in fillers
    assert "like" in fillers


def test_validate_word_count_bounds() -> None:
    assert validate_word_count("one two three four five six", 10.0) == (True, None)

    ok, issue = validate_word_count("two words", 30.0)
    assert not ok
    assert issue == "Very few words (2) for 30.0s audio"

    ok, issue = validate_word_count(" ".join(["word"] * 40), 5.0)
    assert not ok
    assert issue == "Too many words (40) for 5.0s - likely hallucination"


def test_estimate_pronunciation_without_transcripts() -> None:
    estimate = estimate_pronunciation([])
    assert estimate.estimated_band == 5.0
    assert estimate.confidence == "low"
    assert estimate.evidence == ["No transcription data"]


def test_estimate_pronunciation_is_capped_and_half_banded() -> None:
    text = " ".join(["clear"] * 120)
    transcript = merged_transcript("part1-q1", text)
    transcript.avg_logprob = 0.0
    transcript.avg_confidence = 1.0
    estimate = estimate_pronunciation([transcript, transcript])
    assert estimate.estimated_band == 7.0
    assert estimate.confidence == "high"
    assert (estimate.estimated_band * 2) % 1 == 0
    assert estimate.to_document()["estimatedBand"] == 7.0
