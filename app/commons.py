"""
Shared utility functions and singletons used across multiple modules.
"""

import random
import uuid
from datetime import datetime
from typing import Callable, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address

from configs.config import get_config

# ── Shared rate-limiter instance ─────────────────────────────────────────
# Created here (not in main.py) so that route modules can import it
# without a circular dependency.
limiter = Limiter(key_func=get_remote_address)


def generate_job_id() -> str:
    """Generate a job ID (e.g., 'job_3f2a9c1e5b7d')."""
    return f"job_{uuid.uuid4().hex[:12]}"


def generate_result_id() -> str:
    """Generate a result ID (e.g., 'res_3f2a9c1e5b7d')."""
    return f"res_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.utcnow()


def today_utc() -> str:
    """Current UTC day as ``YYYY-MM-DD``; quota flags are keyed by it."""
    return datetime.utcnow().date().isoformat()


def backoff_with_jitter(attempt: int, base_ms: Optional[int] = None,
                        max_ms: Optional[int] = None,
                        rand: Callable[[], float] = random.random) -> float:
    """Exponential backoff in seconds (``base * 2^attempt``, capped) plus up to 50% jitter."""
    cfg = get_config()
    base_ms = cfg.BACKOFF_BASE_MS if base_ms is None else base_ms
    max_ms = cfg.BACKOFF_MAX_MS if max_ms is None else max_ms
    delay_ms = min(base_ms * (2 ** attempt), max_ms)
    return (delay_ms + rand() * delay_ms * 0.5) / 1000.0
