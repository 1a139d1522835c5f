"""
Parsing, normalising and validating the evaluator model's JSON output.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from src.evaluation.models import CAMEL_CRITERIA_KEYS, CRITERIA_KEYS

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_json(text: str) -> Optional[Any]:
    """
    Parse model output that should be JSON: as-is, then inside a fenced
    code block, then the first ``{...}`` span. None when all three fail.
    """
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    match = _FENCED_RE.search(text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except ValueError:
            pass

    match = _OBJECT_RE.search(text)
    if match:
        try:
            return json.loads(match.group(0))
        except ValueError:
            pass

    logger.debug("Could not parse JSON from model output (%d chars)", len(text))
    return None


def _normalize_criterion(criterion: Dict) -> Dict:
    criterion = dict(criterion)
    if "band" not in criterion and "score" in criterion:
        criterion["band"] = criterion["score"]
    return criterion


def normalize_response(result: Any) -> Any:
    """
    Bring the known output variants onto one shape: criteria nested under
    ``criteria`` with snake_case keys and ``band`` fields, ``overall_band``
    and ``modelAnswers``.
    """
    if not isinstance(result, dict):
        return result
    result = dict(result)

    source = result.get("criteria") if isinstance(result.get("criteria"), dict) else result
    criteria = {}
    for key in CRITERIA_KEYS:
        value = source.get(key) or source.get(CAMEL_CRITERIA_KEYS[key])
        if isinstance(value, dict):
            criteria[key] = _normalize_criterion(value)
    if criteria or "criteria" in result:
        result["criteria"] = criteria

    if "overall_band" not in result and "overallBand" in result:
        result["overall_band"] = result["overallBand"]
    if "modelAnswers" not in result and "model_answers" in result:
        result["modelAnswers"] = result["model_answers"]
    return result


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_response(result: Any, expected_answers: int) -> List[str]:
    """Problems with a normalised response; empty when it is usable."""
    if not isinstance(result, dict):
        return ["Response is not a JSON object"]

    issues = []
    criteria = result.get("criteria") or {}
    all_zero = True
    for key in CRITERIA_KEYS:
        criterion = criteria.get(key) or {}
        band = criterion.get("band")
        if not _is_number(band) or band < 0 or band > 9:
            issues.append(f"Missing or invalid band for {key}: {band}")
        elif band > 0:
            all_zero = False
        feedback = criterion.get("feedback") or ""
        if isinstance(feedback, str) and "no audio input" in feedback.lower():
            issues.append(f'{key} says "no audio input"')

    overall = result.get("overall_band")
    if all_zero and _is_number(overall) and overall > 0:
        issues.append("All criteria bands are 0 but overall_band is non-zero")

    answers = result.get("modelAnswers")
    answer_count = len(answers) if isinstance(answers, list) else 0
    if answer_count < expected_answers:
        issues.append(f"Expected {expected_answers} modelAnswers, got {answer_count}")

    return issues
