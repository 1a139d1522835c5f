"""
Acoustic metrics derived from ASR responses, and the pronunciation
estimate built on top of them.
"""

import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from src.asr.models import AcousticMetrics, AsrResponse, LongPause, MergedTranscript

LONG_PAUSE_SECONDS = 2.0
FILLER_WORDS = ("um", "uh", "er", "ah", "like", "you know", "i mean")

_FILLER_PATTERNS = [
    (filler, re.compile(r"\b" + r"\s+".join(filler.split()) + r"\b"))
    for filler in FILLER_WORDS
]


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def extract_metrics(response: Optional[AsrResponse]) -> AcousticMetrics:
    """Mean log-prob, mean no-speech probability and long inter-segment gaps."""
    segments = response.segments if response else []
    logprobs = [s.avg_logprob for s in segments if _finite(s.avg_logprob)]
    no_speech = [s.no_speech_prob for s in segments if _finite(s.no_speech_prob)]

    long_pauses = []
    for current, following in zip(segments, segments[1:]):
        gap = following.start - current.end
        if _finite(gap) and gap >= LONG_PAUSE_SECONDS:
            long_pauses.append(LongPause(start=current.end, end=following.start, duration=gap))

    return AcousticMetrics(
        avg_logprob=sum(logprobs) / len(logprobs) if logprobs else -1.0,
        no_speech_prob=sum(no_speech) / len(no_speech) if no_speech else 0.0,
        long_pauses=long_pauses,
    )


def extract_filler_words(text: str) -> List[str]:
    """Every filler occurrence in ``text``, one list entry per occurrence."""
    lower = (text or "").lower()
    found: List[str] = []
    for filler, pattern in _FILLER_PATTERNS:
        found.extend([filler] * len(pattern.findall(lower)))
    return found


def validate_word_count(text: str, duration_seconds: float) -> Tuple[bool, Optional[str]]:
    """
    Plausibility of a transcript's length for its audio duration, assuming
    a speaking rate between 60 and 210 words per minute.
    """
    word_count = len((text or "").split())
    min_expected = math.floor(duration_seconds * 1.0)
    max_expected = math.ceil(duration_seconds * 3.5)

    if word_count < min_expected * 0.3:
        return False, f"Very few words ({word_count}) for {duration_seconds:.1f}s audio"
    if word_count > max_expected * 1.5:
        return False, (
            f"Too many words ({word_count}) for {duration_seconds:.1f}s - likely hallucination"
        )
    return True, None


# ── Pronunciation estimate ────────────────────────────────────────────────

@dataclass
class PronunciationEstimate:
    estimated_band: float
    confidence: str
    evidence: List[str] = field(default_factory=list)

    def to_document(self) -> dict:
        return {
            "estimatedBand": self.estimated_band,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
        }


def estimate_pronunciation(transcripts: Sequence[MergedTranscript]) -> PronunciationEstimate:
    """
    Text-only models cannot hear the audio, so pronunciation is estimated
    from recognition confidence, clarity, fillers and long pauses. The
    estimate never exceeds band 7.0.
    """
    if not transcripts:
        return PronunciationEstimate(5.0, "low", ["No transcription data"])

    total_words = sum(t.word_count for t in transcripts)
    weighted_confidence = (
        sum(t.avg_confidence * t.word_count for t in transcripts) / max(1, total_words)
    )
    avg_logprob = sum(t.avg_logprob for t in transcripts) / len(transcripts)
    total_fillers = sum(len(t.filler_words) for t in transcripts)
    total_pauses = sum(len(t.long_pauses) for t in transcripts)
    filler_ratio = total_fillers / max(1, total_words)

    clarity = max(0.0, min(1.0, avg_logprob + 1))
    fluency_penalty = min(0.3, filler_ratio * 0.5 + total_pauses * 0.02)
    pause_penalty = min(0.2, total_pauses * 0.03)

    composite = (
        weighted_confidence * 0.35
        + clarity * 0.30
        + (1 - fluency_penalty) * 0.20
        + (1 - pause_penalty) * 0.15
    )
    capped = min(7.0, composite * 6 + 3)
    band = math.floor(capped * 2 + 0.5) / 2

    confidence = "medium"
    if total_words < 50:
        confidence = "low"
    elif total_words > 200 and weighted_confidence > 0.8:
        confidence = "high"

    evidence = [
        f"Word recognition confidence: {weighted_confidence * 100:.1f}%",
        f"Audio clarity score: {clarity * 100:.1f}%",
        f"Filler word ratio: {filler_ratio * 100:.1f}%",
        f"Long pauses (>2s): {total_pauses}",
        f"Total words analyzed: {total_words}",
        f"Composite score: {composite * 100:.1f}%",
    ]
    return PronunciationEstimate(band, confidence, evidence)
