"""
Dual-ASR merge engine.

Every segment is transcribed by two models: model A is the more accurate
on vocabulary, model B the more robust to background noise. Both outputs
are cleaned and checked, then reconciled into one transcript whose
confidence tier reflects how far the models agreed.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from src.asr.agreement import agreement
from src.asr.cleaning import clean_transcript, detect_hallucinations
from src.asr.metrics import extract_filler_words, extract_metrics, validate_word_count
from src.asr.models import (
    AcousticMetrics,
    AsrResponse,
    AudioSegment,
    ConfidenceTier,
    MergedTranscript,
    ResolutionMethod,
    TranscriptionCandidate,
)
from src.quota.classifier import QuotaExhaustedError, RateLimitedError

logger = logging.getLogger(__name__)

CONSENSUS_THRESHOLD = 0.8
SELECTION_THRESHOLD = 0.5
PADDING_RATIO = 0.9
MIN_TEXT_LENGTH = 3

Transcriber = Callable[[bytes, str], AsrResponse]


@dataclass
class Resolution:
    text: str
    tier: ConfidenceTier
    method: ResolutionMethod
    agreement_score: float
    issues: List[str] = field(default_factory=list)


def _selected(use_a: bool) -> ResolutionMethod:
    return ResolutionMethod.MODEL_A_SELECTED if use_a else ResolutionMethod.MODEL_B_SELECTED


def build_candidate(response: AsrResponse, duration: float) -> TranscriptionCandidate:
    """Clean one model's output and run the hallucination and length checks."""
    cleaned = clean_transcript(response.text)
    valid, issue = validate_word_count(cleaned, duration)
    return TranscriptionCandidate(
        model=response.model,
        raw_text=response.text,
        text=cleaned,
        duration=duration,
        metrics=extract_metrics(response),
        hallucinations=detect_hallucinations(response.text),
        word_count_valid=valid,
        word_count_issue=issue,
    )


def _check_issues(label: str, candidate: TranscriptionCandidate) -> List[str]:
    issues = []
    if candidate.hallucinations:
        issues.append(f"Model {label} hallucination patterns: {', '.join(candidate.hallucinations)}")
    if candidate.word_count_issue:
        issues.append(f"Model {label}: {candidate.word_count_issue}")
    return issues


def resolve(candidate_a: TranscriptionCandidate,
            candidate_b: TranscriptionCandidate) -> Resolution:
    """Reconcile two cleaned candidates by their agreement."""
    score = agreement(candidate_a.text, candidate_b.text)
    len_a, len_b = len(candidate_a.text), len(candidate_b.text)
    issues = _check_issues("A", candidate_a) + _check_issues("B", candidate_b)

    if score >= CONSENSUS_THRESHOLD:
        # Model B unless it dropped more than a tenth of model A's text.
        use_a = len_b < PADDING_RATIO * len_a
        chosen = candidate_a if use_a else candidate_b
        return Resolution(chosen.text, ConfidenceTier.HIGH, ResolutionMethod.CONSENSUS, score, issues)

    if score >= SELECTION_THRESHOLD:
        use_a = candidate_a.quality_score > candidate_b.quality_score
        chosen = candidate_a if use_a else candidate_b
        return Resolution(chosen.text, ConfidenceTier.MEDIUM, _selected(use_a), score, issues)

    issues.append(f"Low agreement between models ({score:.0%})")
    if candidate_a.passes_checks != candidate_b.passes_checks:
        use_a = candidate_a.passes_checks
    else:
        use_a = len_a <= len_b
        issues.append("Both models equally plausible; kept the shorter transcript")
    chosen = candidate_a if use_a else candidate_b
    return Resolution(chosen.text, ConfidenceTier.LOW, _selected(use_a), score, issues)


def _is_quota_error(exc: Optional[Exception]) -> bool:
    return isinstance(exc, (QuotaExhaustedError, RateLimitedError))


class MergeEngine:
    """
    Runs both ASR models on a segment and merges their output. A
    single-model provider passes no ``transcribe_b``: its one transcript is
    kept as a ``single-fallback`` at ``low`` confidence.
    """

    def __init__(self, transcribe_a: Transcriber, transcribe_b: Optional[Transcriber] = None):
        self._transcribe_a = transcribe_a
        self._transcribe_b = transcribe_b

    @property
    def single_model(self) -> bool:
        return self._transcribe_b is None

    def _run_both(self, audio: bytes, filename: str) -> Tuple[
            Optional[AsrResponse], Optional[Exception],
            Optional[AsrResponse], Optional[Exception]]:
        if self.single_model:
            try:
                return self._transcribe_a(audio, filename), None, None, None
            except Exception as exc:
                return None, exc, None, None

        with ThreadPoolExecutor(max_workers=2) as pool:
            future_a = pool.submit(self._transcribe_a, audio, filename)
            future_b = pool.submit(self._transcribe_b, audio, filename)
            response_a = response_b = None
            error_a = error_b = None
            try:
                response_a = future_a.result()
            except Exception as exc:
                error_a = exc
            try:
                response_b = future_b.result()
            except Exception as exc:
                error_b = exc
        return response_a, error_a, response_b, error_b

    def merge(self, segment: AudioSegment, audio: bytes,
              filename: str = "audio.webm") -> MergedTranscript:
        response_a, error_a, response_b, error_b = self._run_both(audio, filename)

        if _is_quota_error(error_a) and (self.single_model or _is_quota_error(error_b)):
            raise error_a

        duration = (
            segment.duration
            or (response_a.duration if response_a else 0.0)
            or (response_b.duration if response_b else 0.0)
        )
        candidate_a = build_candidate(response_a, duration) if response_a else None
        candidate_b = build_candidate(response_b, duration) if response_b else None

        issues: List[str] = []
        if error_a is not None:
            logger.warning("Model A failed on %s: %s", segment.segment_key, error_a)
            issues.append(f"Model A failed: {error_a}")
        if error_b is not None:
            logger.warning("Model B failed on %s: %s", segment.segment_key, error_b)
            issues.append(f"Model B failed: {error_b}")

        usable_a = candidate_a if candidate_a and len(candidate_a.text) >= MIN_TEXT_LENGTH else None
        usable_b = candidate_b if candidate_b and len(candidate_b.text) >= MIN_TEXT_LENGTH else None

        if usable_a and usable_b:
            resolution = resolve(usable_a, usable_b)
            resolution.issues = issues + resolution.issues
        elif usable_a or usable_b:
            survivor = usable_a or usable_b
            label = "A" if usable_a else "B"
            note = (
                "Single-model provider; transcript not cross-checked" if self.single_model
                else f"Only model {label} produced usable text"
            )
            resolution = Resolution(
                survivor.text, ConfidenceTier.LOW, ResolutionMethod.SINGLE_FALLBACK, 0.0,
                issues + [note] + _check_issues(label, survivor),
            )
        else:
            resolution = Resolution(
                "", ConfidenceTier.VERY_LOW, ResolutionMethod.SINGLE_FALLBACK, 0.0,
                issues + ["ASR model failed" if self.single_model else "Both ASR models failed"],
            )

        metrics_source = candidate_a or candidate_b
        metrics = metrics_source.metrics if metrics_source else AcousticMetrics()

        merged = MergedTranscript(
            segment_key=segment.segment_key,
            final_text=resolution.text,
            confidence_tier=resolution.tier,
            resolution_method=resolution.method,
            agreement_score=round(resolution.agreement_score, 4),
            duration=duration,
            issues=resolution.issues,
            model_a_text=candidate_a.text if candidate_a else None,
            model_b_text=candidate_b.text if candidate_b else None,
            avg_logprob=metrics.avg_logprob,
            avg_confidence=metrics.avg_confidence,
            no_speech_prob=metrics.no_speech_prob,
            long_pauses=metrics.long_pauses,
            filler_words=extract_filler_words(resolution.text),
            part_number=segment.part_number,
            question_number=segment.question_number,
        )
        logger.info(
            "Merged %s: %s/%s agreement=%.2f words=%d",
            segment.segment_key, merged.confidence_tier.value,
            merged.resolution_method.value, merged.agreement_score, merged.word_count,
        )
        return merged
