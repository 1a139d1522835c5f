from typing import Dict, List, Optional

from src.asr.models import (
    AsrResponse,
    AsrSegment,
    AudioSegment,
    ConfidenceTier,
    MergedTranscript,
    ResolutionMethod,
)


def asr_response(text: str, model: str = "whisper-large-v3", duration: float = 10.0,
                 segments: Optional[List[AsrSegment]] = None) -> AsrResponse:
    return AsrResponse(
        model=model,
        text=text,
        duration=duration,
        segments=segments if segments is not None else [
            AsrSegment(start=0.0, end=duration, text=text, avg_logprob=-0.2, no_speech_prob=0.01)
        ],
    )


def audio_segment(segment_key: str, part: int = 1, question: int = 1,
                  duration: Optional[float] = 10.0) -> AudioSegment:
    return AudioSegment(
        segment_key=segment_key,
        storage_ref=f"audio/owner/{segment_key}.webm",
        part_number=part,
        question_number=question,
        question_text=f"Question {question} of part {part}",
        duration=duration,
    )


def merged_transcript(segment_key: str, text: str, part: int = 1, question: int = 1,
                      duration: float = 20.0) -> MergedTranscript:
    return MergedTranscript(
        segment_key=segment_key,
        final_text=text,
        confidence_tier=ConfidenceTier.HIGH,
        resolution_method=ResolutionMethod.CONSENSUS,
        agreement_score=1.0,
        duration=duration,
        avg_logprob=-0.2,
        avg_confidence=0.8,
        part_number=part,
        question_number=question,
    )


def evaluator_payload(segments, band: float = 6.0, answer_band: float = 6.0) -> Dict:
    criterion = {
        "band": band,
        "feedback": "Clear enough.",
        "strengths": ["Relevant ideas"],
        "weaknesses": ["Some repetition (e.g., 'I think I think')"],
        "suggestions": ["Vary linking words"],
    }
    return {
        "criteria": {
            "fluency_coherence": dict(criterion),
            "lexical_resource": dict(criterion),
            "grammatical_range": dict(criterion),
            "pronunciation": dict(criterion),
        },
        "summary": "A steady performance.",
        "examiner_notes": "Answers stay on topic.",
        "modelAnswers": [
            {
                "segment_key": s.segment_key,
                "partNumber": s.part_number,
                "questionNumber": s.question_number,
                "estimatedBand": answer_band,
                "modelAnswer": "A fuller answer.",
                "keyImprovements": ["Extend the answer"],
            }
            for s in segments
        ],
        "lexical_upgrades": [],
        "part_notes": [],
        "improvement_priorities": ["Extend answers"],
        "strengths_to_maintain": ["Relevance"],
    }
