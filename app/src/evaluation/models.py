"""
Types shared by the evaluation engine: per-call outcomes, rotation
decisions and the assembled result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

CRITERIA_KEYS = (
    "fluency_coherence",
    "lexical_resource",
    "grammatical_range",
    "pronunciation",
)

CAMEL_CRITERIA_KEYS = {
    "fluency_coherence": "fluencyCoherence",
    "lexical_resource": "lexicalResource",
    "grammatical_range": "grammaticalRange",
    "pronunciation": "pronunciation",
}


class EvaluationError(Exception):
    """No (credential, model) pair produced a usable evaluation."""


# ── Attempt outcomes ─────────────────────────────────────────────────────

@dataclass
class Success:
    payload: Dict[str, Any]


@dataclass
class RateLimited:
    retry_after: Optional[float] = None
    message: str = ""


@dataclass
class QuotaExhausted:
    message: str = ""


@dataclass
class InvalidOutput:
    issues: List[str] = field(default_factory=list)


@dataclass
class ProviderError:
    message: str = ""


# ── Rotation decisions ───────────────────────────────────────────────────

class ActionKind(str, Enum):
    ACCEPT = "accept"
    RETRY_SAME = "retry_same"
    NEXT_MODEL = "next_model"
    NEXT_CREDENTIAL = "next_credential"


@dataclass
class Action:
    kind: ActionKind
    delay_seconds: float = 0.0
    mark_exhausted: bool = False


# ── Assembled result ─────────────────────────────────────────────────────

@dataclass
class CriterionScore:
    band: float
    feedback: str = ""
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_document(self) -> Dict:
        return {
            "band": self.band,
            "feedback": self.feedback,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "suggestions": list(self.suggestions),
        }


@dataclass
class EvaluationResult:
    overall_band: float
    criteria: Dict[str, CriterionScore]
    summary: str
    examiner_notes: str
    model_answers: List[Dict]
    lexical_upgrades: List[Dict]
    improvement_priorities: List[str]
    strengths_to_maintain: List[str]
    part_notes: List[Dict]
    transcripts_by_part: Dict[str, str]
    transcripts_by_question: Dict[str, List[Dict]]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> Dict:
        return {
            "overall_band": self.overall_band,
            "criteria": {key: score.to_document() for key, score in self.criteria.items()},
            "summary": self.summary,
            "examiner_notes": self.examiner_notes,
            "model_answers": self.model_answers,
            "lexical_upgrades": self.lexical_upgrades,
            "improvement_priorities": self.improvement_priorities,
            "strengths_to_maintain": self.strengths_to_maintain,
            "part_notes": self.part_notes,
            "transcripts_by_part": self.transcripts_by_part,
            "transcripts_by_question": self.transcripts_by_question,
            "evaluation_metadata": self.metadata,
        }
