"""
Evaluation engine.

Builds the prompt from the merged transcripts, walks the quota pool
(every usable model on a credential before moving to the next credential)
and assembles the stored result from the first usable response.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from configs.config import get_config
from src.asr.metrics import PronunciationEstimate, estimate_pronunciation
from src.asr.models import AudioSegment, MergedTranscript
from src.evaluation.gemini_client import GeminiEvaluator
from src.evaluation.models import (
    CRITERIA_KEYS,
    ActionKind,
    CriterionScore,
    EvaluationError,
    EvaluationResult,
    InvalidOutput,
    ProviderError,
)
from src.evaluation.prompt import build_evaluation_prompt
from src.evaluation.scoring import aggregate_overall_band, calculate_band, question_bands_from_answers
from src.evaluation.strategy import next_action
from src.quota.pool import QuotaPool

logger = logging.getLogger(__name__)

cfg = get_config()


def _list(value) -> list:
    return list(value) if isinstance(value, list) else []


def _criterion(raw: Dict) -> CriterionScore:
    return CriterionScore(
        band=float(raw.get("band", 5.0)),
        feedback=raw.get("feedback") or "",
        strengths=_list(raw.get("strengths")),
        weaknesses=_list(raw.get("weaknesses")),
        suggestions=_list(raw.get("suggestions")),
    )


def _match_answer(raw_answers: List[Dict], segment: AudioSegment) -> Optional[Dict]:
    for answer in raw_answers:
        if not isinstance(answer, dict):
            continue
        key = answer.get("segment_key") or answer.get("segmentKey")
        if key == segment.segment_key:
            return answer
    for answer in raw_answers:
        if not isinstance(answer, dict):
            continue
        part = answer.get("partNumber", answer.get("part_number"))
        question = answer.get("questionNumber", answer.get("question_number"))
        if part == segment.part_number and question == segment.question_number:
            return answer
    return None


def map_model_answers(raw_answers: List[Dict], segments: Sequence[AudioSegment],
                      transcripts: Dict[str, MergedTranscript]) -> List[Dict]:
    """One model answer per segment, in segment order; blank when the model skipped one."""
    mapped = []
    for segment in segments:
        transcript = transcripts.get(segment.segment_key)
        entry = {
            "segment_key": segment.segment_key,
            "partNumber": segment.part_number,
            "questionNumber": segment.question_number,
            "question": segment.question_text
            or f"Part {segment.part_number} Question {segment.question_number}",
            "candidateResponse": transcript.final_text if transcript else "",
            "modelAnswer": "",
            "keyImprovements": [],
        }
        match = _match_answer(raw_answers, segment)
        if match is None:
            logger.warning("No model answer for %s", segment.segment_key)
        else:
            band = match.get("estimatedBand")
            if isinstance(band, (int, float)) and not isinstance(band, bool):
                entry["estimatedBand"] = float(band)
            entry["modelAnswer"] = match.get("modelAnswer") or match.get("model_answer") or ""
            entry["keyImprovements"] = _list(
                match.get("keyImprovements", match.get("key_improvements"))
            )
        mapped.append(entry)
    return mapped


def build_transcript_views(segments: Sequence[AudioSegment],
                           transcripts: Dict[str, MergedTranscript]):
    """``transcripts_by_part`` (joined text) and ``transcripts_by_question``."""
    by_part: Dict[str, str] = {}
    by_question: Dict[str, List[Dict]] = {}
    for segment in segments:
        transcript = transcripts.get(segment.segment_key)
        text = transcript.final_text if transcript else ""
        part_key = str(segment.part_number)
        by_part[part_key] = f"{by_part[part_key]} {text}".strip() if part_key in by_part else text
        by_question.setdefault(part_key, []).append({
            "question_number": segment.question_number,
            "question_text": segment.question_text,
            "transcript": text,
            "segment_key": segment.segment_key,
        })
    return by_part, by_question


def assemble_result(payload: Dict, segments: Sequence[AudioSegment],
                    transcripts: Dict[str, MergedTranscript],
                    pronunciation: PronunciationEstimate,
                    metadata: Dict) -> EvaluationResult:
    criteria = {key: _criterion(payload["criteria"][key]) for key in CRITERIA_KEYS}
    model_answers = map_model_answers(_list(payload.get("modelAnswers")), segments, transcripts)
    criteria_band = calculate_band(criteria)
    overall_band = aggregate_overall_band(question_bands_from_answers(model_answers), criteria)
    by_part, by_question = build_transcript_views(segments, transcripts)

    tiers: Dict[str, int] = {}
    for transcript in transcripts.values():
        tier = transcript.confidence_tier.value
        tiers[tier] = tiers.get(tier, 0) + 1

    lexical_upgrades = [
        {
            "original": u.get("original") or "",
            "upgraded": u.get("upgraded") or "",
            "context": u.get("context") or "",
        }
        for u in _list(payload.get("lexical_upgrades")) if isinstance(u, dict)
    ]
    part_notes = [
        {"part": n.get("part") or n.get("part_number"), "note": n.get("note") or n.get("issue") or ""}
        for n in _list(payload.get("part_notes")) if isinstance(n, dict)
    ]

    return EvaluationResult(
        overall_band=overall_band,
        criteria=criteria,
        summary=payload.get("summary") or payload.get("examiner_notes") or "Evaluation complete.",
        examiner_notes=payload.get("examiner_notes") or payload.get("summary") or "",
        model_answers=model_answers,
        lexical_upgrades=lexical_upgrades,
        improvement_priorities=_list(payload.get("improvement_priorities")),
        strengths_to_maintain=_list(payload.get("strengths_to_maintain")),
        part_notes=[n for n in part_notes if n["note"]],
        transcripts_by_part=by_part,
        transcripts_by_question=by_question,
        metadata={
            **metadata,
            "criteria_band": criteria_band,
            "pronunciation_estimate": pronunciation.to_document(),
            "transcription_confidence": tiers,
        },
    )


class EvaluationEngine:
    """Evaluates merged transcripts through the Gemini quota pool."""

    def __init__(self, pool: QuotaPool, evaluator: Optional[GeminiEvaluator] = None,
                 models: Optional[Sequence[str]] = None,
                 checkpoint: Callable[[], None] = lambda: None,
                 sleep: Callable[[float], None] = time.sleep):
        self.pool = pool
        self.evaluator = evaluator or GeminiEvaluator()
        self.models = list(models or cfg.GEMINI_MODELS)
        self._checkpoint = checkpoint
        self._sleep = sleep

    def evaluate(self, segments: Sequence[AudioSegment],
                 transcripts: Dict[str, MergedTranscript],
                 topic: str = None, difficulty: str = None,
                 evaluation_mode: str = "accuracy") -> EvaluationResult:
        """
        Raises ``EvaluationError`` once every (credential, model) pair has
        been tried without a usable response. ``checkpoint`` runs before
        each call and may raise to abort the run.
        """
        ordered = [transcripts[s.segment_key] for s in segments]
        pronunciation = estimate_pronunciation(ordered)
        prompt = build_evaluation_prompt(
            segments, transcripts, pronunciation, topic, difficulty, evaluation_mode
        )
        expected = len(segments)

        self.pool.rewind()
        last_failure = None
        while True:
            credential = self.pool.checkout(self.models)
            if credential is None:
                break
            for model in self.pool.usable_models(credential, self.models):
                attempt = 0
                while True:
                    attempt += 1
                    self._checkpoint()
                    outcome = self.evaluator.attempt(credential, model, prompt, expected)
                    action = next_action(outcome, attempt)

                    if action.kind is ActionKind.ACCEPT:
                        logger.info(
                            "Evaluation accepted from %s on %s (attempt %d)",
                            model, credential.credential_id, attempt,
                        )
                        return assemble_result(
                            outcome.payload, segments, transcripts, pronunciation,
                            {
                                "model": model,
                                "credential_id": credential.credential_id,
                                "provider": cfg.LLM_PROVIDER,
                                "evaluation_mode": evaluation_mode,
                                "segment_count": expected,
                            },
                        )

                    last_failure = outcome
                    if action.kind is ActionKind.RETRY_SAME:
                        logger.info(
                            "Retrying %s on %s in %.1fs", model, credential.credential_id,
                            action.delay_seconds,
                        )
                        self._sleep(action.delay_seconds)
                        continue
                    if action.mark_exhausted:
                        logger.warning(
                            "Quota exhausted for %s on %s", model, credential.credential_id
                        )
                        self.pool.mark_exhausted(credential.credential_id, model)
                    elif isinstance(outcome, ProviderError):
                        self.pool.record_error(credential.credential_id)
                    break

                if action.kind is ActionKind.NEXT_CREDENTIAL:
                    logger.info("Rate limited on %s, rotating credential", credential.credential_id)
                    break

        detail = ""
        if isinstance(last_failure, InvalidOutput):
            detail = f": {'; '.join(last_failure.issues)}"
        elif isinstance(last_failure, ProviderError):
            detail = f": {last_failure.message}"
        raise EvaluationError(f"All evaluator credentials and models failed{detail}")
