"""
Provider error classification for quota handling.

Providers do not document a contract that separates a per-minute rate limit
from a spent daily allowance, so the distinction is a heuristic over status
codes and message text. It lives in one injectable policy object so callers
can swap or tune it and so it can be tested on its own.
"""

import math
import re
from enum import Enum
from typing import Iterable, Optional

_RETRY_DELAY_RE = re.compile(r'retryDelay"?\s*:\s*"?(\d+(?:\.\d+)?)s', re.IGNORECASE)
_RETRY_IN_RE = re.compile(r"retry\s+in\s+([0-9.]+)\s*s", re.IGNORECASE)

DEFAULT_QUOTA_MARKERS = (
    "resource_exhausted",
    "resource exhausted",
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
)
PER_MINUTE_MARKERS = ("per minute", "rpm", "tpm")


class QuotaSignal(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    NONE = "none"


class QuotaExhaustedError(Exception):
    """The (credential, model) pair has no quota left today."""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class RateLimitedError(Exception):
    """Temporary throttling; the provider asked us to wait."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 model: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.model = model


def extract_retry_after_seconds(message: str) -> Optional[int]:
    """Parse ``retryDelay":"56s"`` or ``retry in 56.7s`` from an error text."""
    text = str(message or "")
    match = _RETRY_DELAY_RE.search(text)
    if match:
        return max(0, math.ceil(float(match.group(1))))
    match = _RETRY_IN_RE.search(text)
    if match:
        try:
            return max(0, math.ceil(float(match.group(1).rstrip("."))))
        except ValueError:
            return None
    return None


def is_daily_quota_message(message: str) -> bool:
    """Strict check for an explicit billing / daily-cap signal."""
    msg = str(message or "").lower()
    if "check your plan" in msg or "billing" in msg:
        return True
    if "limit: 0" in msg:
        return True
    if "per day" in msg and "retry" not in msg:
        return True
    if "daily quota" in msg or "daily limit" in msg:
        return True
    if "exhausted" in msg and "quota" in msg:
        return not any(marker in msg for marker in PER_MINUTE_MARKERS)
    return False


class QuotaErrorClassifier:
    """
    Default transient-vs-permanent policy.

    * explicit daily/billing wording → PERMANENT
    * quota-like error with a retry-after hint → TRANSIENT
    * quota-like error without a hint → PERMANENT when
      ``unknown_is_permanent`` (the historical behaviour), else TRANSIENT
    * anything else → NONE
    """

    def __init__(
        self,
        quota_markers: Iterable[str] = DEFAULT_QUOTA_MARKERS,
        quota_status_codes: Iterable[int] = (429,),
        unknown_is_permanent: bool = True,
    ):
        self.quota_markers = tuple(m.lower() for m in quota_markers)
        self.quota_status_codes = frozenset(quota_status_codes)
        self.unknown_is_permanent = unknown_is_permanent

    def is_quota_like(self, message: str, status_code: Optional[int] = None) -> bool:
        msg = str(message or "").lower()
        if status_code in self.quota_status_codes:
            return True
        return any(marker in msg for marker in self.quota_markers)

    def classify(self, message: str, status_code: Optional[int] = None) -> QuotaSignal:
        if is_daily_quota_message(message):
            return QuotaSignal.PERMANENT
        if not self.is_quota_like(message, status_code):
            return QuotaSignal.NONE
        if extract_retry_after_seconds(message) is not None:
            return QuotaSignal.TRANSIENT
        return QuotaSignal.PERMANENT if self.unknown_is_permanent else QuotaSignal.TRANSIENT

    def to_exception(self, message: str, status_code: Optional[int] = None,
                     model: Optional[str] = None) -> Optional[Exception]:
        """Map an error to ``QuotaExhaustedError`` / ``RateLimitedError`` or None."""
        signal = self.classify(message, status_code)
        if signal is QuotaSignal.PERMANENT:
            return QuotaExhaustedError(message, model=model)
        if signal is QuotaSignal.TRANSIENT:
            return RateLimitedError(
                message, retry_after=extract_retry_after_seconds(message), model=model
            )
        return None
