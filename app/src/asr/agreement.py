"""
Word-level agreement between two transcripts.
"""

from typing import List, Sequence


def tokenize(text: str) -> List[str]:
    """Lower-cased whitespace tokens."""
    return (text or "").lower().split()


def lcs_length(a: Sequence[str], b: Sequence[str]) -> int:
    """Longest common subsequence length, two-row dynamic programme."""
    if not a or not b:
        return 0
    if len(b) > len(a):
        a, b = b, a

    previous = [0] * (len(b) + 1)
    for token_a in a:
        current = [0] * (len(b) + 1)
        for j, token_b in enumerate(b, start=1):
            if token_a == token_b:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current
    return previous[-1]


def agreement(text_a: str, text_b: str) -> float:
    """LCS(a, b) / max(|a|, |b|) in [0, 1]; two empty texts agree fully."""
    words_a = tokenize(text_a)
    words_b = tokenize(text_b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return lcs_length(words_a, words_b) / max(len(words_a), len(words_b))
