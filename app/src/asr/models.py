"""
Data models for the dual-ASR merge engine.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very-low"


class ResolutionMethod(str, Enum):
    CONSENSUS = "consensus"
    MODEL_A_SELECTED = "modelA-selected"
    MODEL_B_SELECTED = "modelB-selected"
    SINGLE_FALLBACK = "single-fallback"


@dataclass
class AsrSegment:
    """One timed chunk of an ASR response."""

    start: float
    end: float
    text: str = ""
    avg_logprob: Optional[float] = None
    no_speech_prob: Optional[float] = None


@dataclass
class AsrResponse:
    """What a transcription endpoint returned for one audio file."""

    model: str
    text: str
    duration: float = 0.0
    segments: List[AsrSegment] = field(default_factory=list)
    language: Optional[str] = None


@dataclass
class LongPause:
    start: float
    end: float
    duration: float


@dataclass
class AcousticMetrics:
    avg_logprob: float = -1.0
    no_speech_prob: float = 0.0
    long_pauses: List[LongPause] = field(default_factory=list)

    @property
    def avg_confidence(self) -> float:
        return max(0.0, min(1.0, self.avg_logprob + 1.0))


@dataclass
class TranscriptionCandidate:
    """One model's cleaned output plus the checks run on it."""

    model: str
    raw_text: str
    text: str
    duration: float
    metrics: AcousticMetrics
    hallucinations: List[str] = field(default_factory=list)
    word_count_valid: bool = True
    word_count_issue: Optional[str] = None

    @property
    def passes_checks(self) -> bool:
        return not self.hallucinations and self.word_count_valid

    @property
    def quality_score(self) -> int:
        return (0 if self.hallucinations else 1) + (1 if self.word_count_valid else 0)


@dataclass
class AudioSegment:
    segment_key: str
    storage_ref: str
    part_number: int
    question_number: int
    question_text: str = ""
    duration: Optional[float] = None


@dataclass
class MergedTranscript:
    segment_key: str
    final_text: str
    confidence_tier: ConfidenceTier
    resolution_method: ResolutionMethod
    agreement_score: float
    duration: float
    issues: List[str] = field(default_factory=list)
    model_a_text: Optional[str] = None
    model_b_text: Optional[str] = None
    avg_logprob: float = -1.0
    avg_confidence: float = 0.0
    no_speech_prob: float = 0.0
    long_pauses: List[LongPause] = field(default_factory=list)
    filler_words: List[str] = field(default_factory=list)
    part_number: int = 1
    question_number: int = 1

    @property
    def word_count(self) -> int:
        return len(self.final_text.split())

    def to_document(self) -> Dict:
        """Plain dict for MongoDB (enums flattened to their values)."""
        document = asdict(self)
        document["confidence_tier"] = self.confidence_tier.value
        document["resolution_method"] = self.resolution_method.value
        document["word_count"] = self.word_count
        return document

    @classmethod
    def from_document(cls, document: Dict) -> "MergedTranscript":
        data = dict(document)
        data.pop("word_count", None)
        data["confidence_tier"] = ConfidenceTier(data["confidence_tier"])
        data["resolution_method"] = ResolutionMethod(data["resolution_method"])
        data["long_pauses"] = [LongPause(**p) for p in data.get("long_pauses") or []]
        return cls(**data)
