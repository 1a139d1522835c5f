"""
Read access to the practice-test question catalogue.

The catalogue is owned by the content side of the product; the pipeline
only reads it to order segments and to put question text in prompts.
"""

import logging
from typing import Dict, Optional

from configs.config import get_config
from src.database.connection import get_db

logger = logging.getLogger(__name__)

cfg = get_config()


def get_test_payload(test_id: str) -> Optional[Dict]:
    """
    Return the test's ``payload`` (``speaking_parts`` with their questions),
    or None if the test is unknown.
    """
    try:
        db = get_db()
        test = db[cfg.PRACTICE_TESTS_COLLECTION].find_one(
            {"test_id": test_id}, {"payload": 1, "topic": 1, "difficulty": 1}
        )
        if not test:
            logger.warning("Practice test %s not found", test_id)
            return None
        payload = test.get("payload") or {}
        payload.setdefault("topic", test.get("topic"))
        payload.setdefault("difficulty", test.get("difficulty"))
        return payload
    except Exception as exc:
        logger.error(
            "Error loading practice test %s: %s", test_id, exc, exc_info=True
        )
        return None
