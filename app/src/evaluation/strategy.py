"""
Rotation policy for evaluator calls.

``next_action`` is a pure function of one call's outcome and how many
times the same (credential, model) pair has been tried, so the whole
retry and rotation policy can be tested without a provider.
"""

from typing import Union

from commons import backoff_with_jitter
from configs.config import get_config
from src.evaluation.models import (
    Action,
    ActionKind,
    InvalidOutput,
    ProviderError,
    QuotaExhausted,
    RateLimited,
    Success,
)

cfg = get_config()

RATE_LIMIT_RETRIES = 1

Outcome = Union[Success, RateLimited, QuotaExhausted, InvalidOutput, ProviderError]


def next_action(outcome: Outcome, attempt_number: int,
                max_transient_attempts: int = None) -> Action:
    """
    Decide what to do after the ``attempt_number``-th call (1-based) on the
    current (credential, model) pair.
    """
    max_transient_attempts = max_transient_attempts or cfg.LLM_MAX_TRANSIENT_ATTEMPTS

    if isinstance(outcome, Success):
        return Action(ActionKind.ACCEPT)

    if isinstance(outcome, RateLimited):
        if attempt_number <= RATE_LIMIT_RETRIES:
            delay = outcome.retry_after if outcome.retry_after is not None \
                else backoff_with_jitter(attempt_number - 1)
            return Action(ActionKind.RETRY_SAME, delay_seconds=float(delay))
        # Throttled twice: leave the credential alone for this run, flag untouched.
        return Action(ActionKind.NEXT_CREDENTIAL)

    if isinstance(outcome, QuotaExhausted):
        return Action(ActionKind.NEXT_MODEL, mark_exhausted=True)

    if isinstance(outcome, InvalidOutput):
        return Action(ActionKind.NEXT_MODEL)

    if isinstance(outcome, ProviderError):
        if attempt_number < max_transient_attempts:
            return Action(ActionKind.RETRY_SAME, delay_seconds=backoff_with_jitter(attempt_number - 1))
        return Action(ActionKind.NEXT_MODEL)

    raise TypeError(f"Unknown outcome type: {type(outcome).__name__}")
