"""
Transcript cleaning and hallucination detection.

Whisper-family models hallucinate in recognisable ways on short or noisy
speech-test answers: video outros, subtitle credits, foreign-script runs,
punctuation noise and whole-answer repetition. ``clean_transcript`` removes
exactly the patterns listed here and nothing else; ``detect_hallucinations``
reports which patterns fired so the merge step can weigh candidates.
"""

import logging
import re
from typing import Dict, List, Pattern

logger = logging.getLogger(__name__)

_I = re.IGNORECASE

# Common function words of languages Whisper drifts into. Used for
# detection only, never stripped. Words that also occur in English answers
# ("Los Angeles", "Lake Como", "heel", "fare", "SIM card") are left out.
FOREIGN_WORD_PATTERNS: Dict[str, Pattern] = {
    "german": re.compile(
        r"\b(wieder|und|oder|nicht|aber|danke|bitte|nein|sehr|ich|sie|wir|ist|"
        r"haben|werden|kann|muss|soll)\b", _I),
    "spanish": re.compile(
        r"\b(hablando|pero|gracias|bueno|entonces|porque|tambien|"
        r"esta|este|una|por|sobre)\b", _I),
    "french": re.compile(
        r"\b(merci|bonjour|alors|peut|tres|bien|donc|mais|avec|dans|"
        r"cette|sont|nous|vous|leur|faire|etre)\b", _I),
    "portuguese": re.compile(
        r"\b(obrigado|muito|entao|porque|ainda|agora|mais|isso|esse|esta|"
        r"voce|nao|por)\b", _I),
    "italian": re.compile(
        r"\b(grazie|molto|allora|perche|ancora|adesso|questo|quello|sono|"
        r"siamo|hanno|essere|potere)\b", _I),
    "dutch": re.compile(
        r"\b(bedankt|omdat|nog|steeds|zijn|hebben|worden|"
        r"kunnen|moeten|zullen)\b", _I),
}

FOREIGN_SCRIPT_PATTERNS: Dict[str, Pattern] = {
    "cjk": re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uac00-\ud7af\u3040-\u309f\u30a0-\u30ff]"),
    "arabic": re.compile(r"[\u0600-\u06ff\u0750-\u077f]"),
    "cyrillic": re.compile(r"[\u0400-\u04ff]"),
    "hebrew": re.compile(r"[\u0590-\u05ff]"),
    "thai": re.compile(r"[\u0e00-\u0e7f]"),
    "devanagari": re.compile(r"[\u0900-\u097f]"),
}

ARTIFACT_PATTERNS: Dict[str, Pattern] = {
    "youtube_endings": re.compile(
        r"\b(thank\s*you\s*(for\s*)?(watching|listening|viewing)|"
        r"please\s*(like|subscribe|share)|don'?t\s*forget\s*to\s*subscribe)\b", _I),
    "podcast_artifacts": re.compile(
        r"\b(this\s*episode|brought\s*to\s*you\s*by|sponsored\s*by|our\s*sponsor)\b", _I),
    "subtitle_artifacts": re.compile(
        r"\b(subtitles?\s*by|captions?\s*by|transcribed?\s*by)\b", _I),
}

NOISE_PATTERNS: Dict[str, Pattern] = {
    "repeated_punctuation": re.compile(r"[,.\"'\s]{5,}"),
    "many_ellipses": re.compile(r"\.{4,}"),
    "placeholder": re.compile(r"\bX{3,}\b|_{3,}|\*{3,}", _I),
    "sound_descriptions": re.compile(
        r"\[(music|applause|laughter|silence|inaudible|crosstalk)\]", _I),
}

HALLUCINATION_PATTERNS: Dict[str, Pattern] = {
    **FOREIGN_WORD_PATTERNS,
    **FOREIGN_SCRIPT_PATTERNS,
    **ARTIFACT_PATTERNS,
    **NOISE_PATTERNS,
}

STRIP_START_PATTERNS: List[Pattern] = [
    re.compile(r"^(ielts\s+)?speaking\s+test\.?\s*(interview)?\.?\s*", _I),
    re.compile(r"^welcome\s+to\s+(the\s+)?(ielts\s+)?speaking\s+test\.?\s*", _I),
    re.compile(r"^this\s+is\s+(an?\s+)?ielts\s+speaking\.?\s*", _I),
    re.compile(r"^okay\.?\s+so\.?\s*", _I),
]

STRIP_END_PATTERNS: List[Pattern] = [
    re.compile(r"\s*\bthank\s*you\.?\s*$", _I),
    re.compile(r"\s*\bthanks\.?\s*$", _I),
    re.compile(r"\s*\bbye\.?\s*$", _I),
    re.compile(r"\s*\bgoodbye\.?\s*$", _I),
    re.compile(r"\s*\.{3,}\s*$"),
]

_WHITESPACE = re.compile(r"\s+")

DUPLICATION_MIN_WORDS = 16
DUPLICATION_OVERLAP_RATIO = 0.65


def detect_hallucinations(text: str) -> List[str]:
    """Names of every hallucination pattern present in ``text``."""
    return [name for name, pattern in HALLUCINATION_PATTERNS.items() if pattern.search(text or "")]


def has_duplication(text: str) -> bool:
    """
    True when the answer looks repeated: the opening quarter recurs later,
    or the second half reuses more than 65% of the first half's words.
    """
    words = [w for w in text.lower().split() if len(w) > 1]
    if len(words) < DUPLICATION_MIN_WORDS:
        return False

    half = len(words) // 2
    quarter = len(words) // 4
    if quarter >= 4:
        opening = " ".join(words[:quarter])
        if opening in " ".join(words[quarter:]):
            return True

    first_half = set(words[:half])
    overlap = sum(1 for w in words[half:] if w in first_half)
    return overlap / half > DUPLICATION_OVERLAP_RATIO


def remove_duplication(text: str) -> str:
    """Truncate an answer where it starts repeating itself."""
    words = text.split()
    if len(words) < DUPLICATION_MIN_WORDS:
        return text

    half = len(words) // 2
    lowest = int(len(words) * 0.4)
    for split_point in range(half, lowest - 1, -1):
        head = " ".join(words[:5]).lower() if split_point >= 5 else " ".join(words[:split_point]).lower()
        tail = " ".join(words[split_point:]).lower()
        if head and head in tail:
            logger.debug("Removed duplication at word %d", split_point)
            return " ".join(words[:split_point])

    if has_duplication(text):
        return " ".join(words[:half])
    return text


def strip_boilerplate(text: str) -> str:
    """Drop examiner-style openers and sign-offs at the answer edges."""
    cleaned = text.strip()
    for pattern in STRIP_START_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    for pattern in STRIP_END_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned


def clean_transcript(text: str) -> str:
    """Apply every documented cleaning rule, in order."""
    if not text:
        return ""

    cleaned = strip_boilerplate(text)

    cleaned = NOISE_PATTERNS["repeated_punctuation"].sub(" ", cleaned)
    cleaned = NOISE_PATTERNS["many_ellipses"].sub("...", cleaned)
    cleaned = NOISE_PATTERNS["placeholder"].sub("[unclear]", cleaned)
    cleaned = NOISE_PATTERNS["sound_descriptions"].sub("", cleaned)

    for pattern in FOREIGN_SCRIPT_PATTERNS.values():
        cleaned = pattern.sub("", cleaned)
    for pattern in ARTIFACT_PATTERNS.values():
        cleaned = pattern.sub("", cleaned)

    cleaned = remove_duplication(cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()
