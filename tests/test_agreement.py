import pytest

from src.asr.agreement import agreement, lcs_length, tokenize


def test_tokenize_lowercases_and_splits_on_whitespace() -> None:
    assert tokenize("  I Think\tit's  REAL\n") == ["i", "think", "it's", "real"]
    assert tokenize(None) == []


def test_lcs_length_preserves_order() -> None:
    assert lcs_length(["a", "b", "c", "d"], ["a", "c", "d"]) == 3
    assert lcs_length(["a", "b"], ["b", "a"]) == 1
    assert lcs_length([], ["a"]) == 0


def test_one_word_substitution_reaches_consensus_threshold() -> None:
    score = agreement("I think climate change is real", "I think climate change is reel")
    assert score == pytest.approx(5 / 6)
    assert score >= 0.8


@pytest.mark.parametrize(
    "a, b",
    [
        ("my hometown is small and quiet", "my home town is quiet"),
        ("we went to the beach", "the beach we went to"),
        ("", "something was said"),
        ("um I like reading", "I like reading books a lot"),
    ],
)
def test_agreement_is_symmetric_and_bounded(a, b) -> None:
    forward = agreement(a, b)
    assert forward == agreement(b, a)
    assert 0.0 <= forward <= 1.0


def test_agreement_with_itself_is_one() -> None:
    text = "Well I usually spend my weekends with my family"
    assert agreement(text, text) == 1.0
    assert agreement("", "") == 1.0


def test_agreement_is_case_insensitive() -> None:
    assert agreement("Hello World", "hello world") == 1.0
