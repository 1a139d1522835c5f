"""
Segment keys and their mapping onto the practice-test question catalogue.

A segment key looks like ``part2-q<question id>``. The question id is
usually a catalogue id; older submissions use the question number
directly (``part1-q3``).
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from src.asr.models import AudioSegment

_SEGMENT_KEY_RE = re.compile(r"^part([123])-q(.+)$", re.IGNORECASE)
_PART_RE = re.compile(r"part(\d+)", re.IGNORECASE)
_QUESTION_NUMBER_RE = re.compile(r"^q?(\d+)$", re.IGNORECASE)


@dataclass
class QuestionInfo:
    part_number: int
    question_number: int
    question_text: str


def _speaking_parts(payload: Optional[Dict]) -> List[Dict]:
    payload = payload or {}
    parts = payload.get("speaking_parts") or payload.get("speakingParts") or []
    return parts if isinstance(parts, list) else []


def _part_number(part: Dict) -> Optional[int]:
    try:
        return int(part.get("part_number") or part.get("partNumber"))
    except (TypeError, ValueError):
        return None


def build_question_map(payload: Optional[Dict]) -> Dict[str, QuestionInfo]:
    """Question id → (part, number, text) for every catalogued question."""
    questions: Dict[str, QuestionInfo] = {}
    for part in _speaking_parts(payload):
        part_number = _part_number(part)
        if part_number not in (1, 2, 3):
            continue
        for index, question in enumerate(part.get("questions") or [], start=1):
            question_id = str(question.get("id") or "")
            if not question_id:
                continue
            questions[question_id] = QuestionInfo(
                part_number=part_number,
                question_number=int(question.get("question_number") or index),
                question_text=str(question.get("question_text") or ""),
            )
    return questions


def cue_card_topics(payload: Optional[Dict]) -> Dict[int, str]:
    topics = {}
    for part in _speaking_parts(payload):
        topic = part.get("cue_card_topic") or part.get("cue_card")
        if topic and _part_number(part):
            topics[_part_number(part)] = str(topic)
    return topics


def parse_segment_key(segment_key: str,
                      question_map: Optional[Dict[str, QuestionInfo]] = None) -> QuestionInfo:
    """
    Part and question identity of a segment. Catalogue ids win; bare
    question numbers are the fallback; anything else is question 1.
    """
    question_map = question_map or {}
    match = _SEGMENT_KEY_RE.match(segment_key or "")
    if not match:
        part_match = _PART_RE.search(segment_key or "")
        return QuestionInfo(int(part_match.group(1)) if part_match else 1, 1, "")

    part_number = int(match.group(1))
    question_id = match.group(2)

    known = question_map.get(question_id) or question_map.get(question_id.lstrip("qQ"))
    if known:
        return known

    number_match = _QUESTION_NUMBER_RE.match(question_id)
    question_number = int(number_match.group(1)) if number_match else 1
    return QuestionInfo(part_number, question_number, "")


def question_text_for(payload: Optional[Dict], info: QuestionInfo) -> str:
    """Question text for a prompt: the cue card topic for part 2, else the catalogue text."""
    if info.part_number == 2:
        topic = cue_card_topics(payload).get(2)
        if topic:
            return topic
    if info.question_text:
        return info.question_text

    for part in _speaking_parts(payload):
        if _part_number(part) != info.part_number:
            continue
        for index, question in enumerate(part.get("questions") or [], start=1):
            number = question.get("question_number") or index
            if int(number) == info.question_number and question.get("question_text"):
                return str(question["question_text"])
    return f"Part {info.part_number} Question {info.question_number}"


def build_segments(file_paths: Dict[str, str], payload: Optional[Dict],
                   durations: Optional[Dict[str, float]] = None) -> List[AudioSegment]:
    """Turn a job's ``file_paths`` into ordered ``AudioSegment`` values."""
    question_map = build_question_map(payload)
    durations = durations or {}
    segments = []
    for segment_key, storage_ref in file_paths.items():
        info = parse_segment_key(segment_key, question_map)
        segments.append(AudioSegment(
            segment_key=segment_key,
            storage_ref=storage_ref,
            part_number=info.part_number,
            question_number=info.question_number,
            question_text=question_text_for(payload, info),
            duration=durations.get(segment_key),
        ))
    return order_segments(segments)


def order_segments(segments: Iterable[AudioSegment]) -> List[AudioSegment]:
    """Part first, then question number; key breaks remaining ties."""
    return sorted(segments, key=lambda s: (s.part_number, s.question_number, s.segment_key))
