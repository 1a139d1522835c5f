"""
Band arithmetic.

IELTS bands move in half steps. A raw average is rounded with the
examiners' convention: below .25 rounds down, below .75 goes to the half
band, anything higher rounds up to the next whole band.
"""

import math
from typing import Dict, Iterable, Mapping, Sequence, Tuple, Union

from src.evaluation.models import CRITERIA_KEYS, CriterionScore

MIN_BAND = 1.0
MAX_BAND = 9.0

PART_WEIGHTS = {1: 1.0, 2: 2.0, 3: 1.5}
MINIMAL_BAND = 2.0
# (share of minimal answers, overall cap), strictest first
MINIMAL_ANSWER_CAPS = ((0.5, 4.0), (0.3, 5.0))

Criterion = Union[CriterionScore, Mapping, float, int]


def round_band(raw: float) -> float:
    """Round a raw average to a half band (IELTS convention), within [0, 9]."""
    if raw is None or not math.isfinite(raw):
        return 0.0
    value = max(0.0, min(MAX_BAND, raw))
    whole = math.floor(value)
    fraction = value - whole
    if fraction < 0.25:
        return float(whole)
    if fraction < 0.75:
        return whole + 0.5
    return float(whole + 1)


def clamp_band(band: float) -> float:
    return max(MIN_BAND, min(MAX_BAND, band))


def _band_of(criterion: Criterion) -> float:
    if isinstance(criterion, CriterionScore):
        return float(criterion.band)
    if isinstance(criterion, Mapping):
        value = criterion.get("band", criterion.get("score"))
        return float(value)
    return float(criterion)


def _criteria_bands(criteria: Union[Mapping[str, Criterion], Iterable[Criterion]]) -> list:
    if isinstance(criteria, Mapping):
        return [_band_of(criteria[key]) for key in CRITERIA_KEYS if key in criteria]
    return [_band_of(c) for c in criteria]


def calculate_band(criteria: Union[Mapping[str, Criterion], Iterable[Criterion]]) -> float:
    """
    Overall band from the four criteria: mean, rounded, clamped to [1, 9].

    >>> calculate_band([6, 6, 5.5, 6])
    6.0
    """
    bands = _criteria_bands(criteria)
    if not bands:
        raise ValueError("No criterion bands to average")
    return clamp_band(round_band(sum(bands) / len(bands)))


def aggregate_overall_band(
    question_bands: Sequence[Tuple[int, float]],
    criteria: Union[Mapping[str, Criterion], Iterable[Criterion], None] = None,
) -> float:
    """
    Weighted overall band from per-question ``(part_number, band)`` pairs.

    Part 2 counts double and part 3 one and a half times. Without any
    per-question bands the criteria mean is used. Many minimal answers
    cap the result: at least 30% caps it at 5.0, at least half at 4.0.
    """
    if not question_bands:
        if criteria is None:
            raise ValueError("Neither question bands nor criteria supplied")
        return calculate_band(criteria)

    total_weight = 0.0
    weighted = 0.0
    for part_number, band in question_bands:
        weight = PART_WEIGHTS.get(part_number, 1.0)
        weighted += weight * band
        total_weight += weight
    raw = weighted / total_weight

    minimal_share = sum(1 for _, band in question_bands if band <= MINIMAL_BAND) / len(question_bands)
    for share, cap in MINIMAL_ANSWER_CAPS:
        if minimal_share >= share:
            raw = min(raw, cap)
            break

    return clamp_band(round_band(raw))


def question_bands_from_answers(model_answers: Sequence[Dict]) -> list:
    """``(part, band)`` pairs for every model answer carrying a numeric estimate."""
    pairs = []
    for answer in model_answers:
        band = answer.get("estimatedBand")
        if isinstance(band, (int, float)) and not isinstance(band, bool) and 0 <= band <= 9:
            pairs.append((int(answer.get("partNumber") or 1), float(band)))
    return pairs
