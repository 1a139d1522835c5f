"""
Whisper transcription client.

Both supported ASR providers expose the OpenAI transcription API, so one
``openai.OpenAI`` client pointed at the provider's base URL serves both.
Transient server and network failures are retried here with backoff;
quota and rate-limit failures are classified and raised for the caller's
credential rotation to handle.
"""

import logging
import time
from typing import Any, Optional

import openai
from openai import OpenAI

from commons import backoff_with_jitter
from configs.config import get_config
from src.asr.models import AsrResponse, AsrSegment
from src.quota.classifier import QuotaErrorClassifier

logger = logging.getLogger(__name__)

cfg = get_config()


class AsrUnavailableError(Exception):
    """The ASR provider failed for a reason other than quota."""


def _field(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _to_float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_transcription(model: str, response: Any) -> AsrResponse:
    """Convert a ``verbose_json`` transcription into an ``AsrResponse``."""
    segments = []
    for raw in _field(response, "segments") or []:
        segments.append(AsrSegment(
            start=_to_float(_field(raw, "start")) or 0.0,
            end=_to_float(_field(raw, "end")) or 0.0,
            text=str(_field(raw, "text") or ""),
            avg_logprob=_to_float(_field(raw, "avg_logprob")),
            no_speech_prob=_to_float(_field(raw, "no_speech_prob")),
        ))
    return AsrResponse(
        model=model,
        text=str(_field(response, "text") or "").strip(),
        duration=_to_float(_field(response, "duration")) or 0.0,
        segments=segments,
        language=_field(response, "language"),
    )


class WhisperClient:
    """Transcribes audio with one provider credential."""

    def __init__(self, provider: str, api_key: str,
                 classifier: Optional[QuotaErrorClassifier] = None,
                 sleep=time.sleep):
        settings = cfg.ASR_PROVIDERS[provider]
        self.provider = provider
        self.classifier = classifier or QuotaErrorClassifier()
        self._sleep = sleep
        self._client = OpenAI(
            api_key=api_key,
            base_url=settings["base_url"],
            timeout=cfg.ASR_TIMEOUT_SECONDS,
            max_retries=0,
        )

    def transcribe(self, model: str, audio: bytes, filename: str = "audio.webm") -> AsrResponse:
        """
        Transcribe ``audio`` with ``model``.

        Raises ``QuotaExhaustedError`` / ``RateLimitedError`` on quota
        signals and ``AsrUnavailableError`` once transient retries run out.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, cfg.ASR_MAX_CALL_ATTEMPTS + 1):
            try:
                response = self._client.audio.transcriptions.create(
                    model=model,
                    file=(filename, audio),
                    response_format="verbose_json",
                    language=cfg.ASR_LANGUAGE,
                    temperature=0,
                    prompt=cfg.ASR_PROMPT,
                )
                return parse_transcription(model, response)

            except openai.APIStatusError as exc:
                quota_error = self.classifier.to_exception(
                    exc.message, status_code=exc.status_code, model=model
                )
                if quota_error is not None:
                    logger.warning(
                        "%s/%s quota signal (%s): %s",
                        self.provider, model, exc.status_code, exc.message,
                    )
                    raise quota_error from exc
                if exc.status_code < 500:
                    raise AsrUnavailableError(
                        f"{self.provider}/{model} rejected request ({exc.status_code}): {exc.message}"
                    ) from exc
                last_error = exc

            except openai.APIConnectionError as exc:
                last_error = exc

            if attempt < cfg.ASR_MAX_CALL_ATTEMPTS:
                delay = backoff_with_jitter(attempt - 1)
                logger.info(
                    "%s/%s transient error (attempt %d/%d), retrying in %.1fs: %s",
                    self.provider, model, attempt, cfg.ASR_MAX_CALL_ATTEMPTS, delay, last_error,
                )
                self._sleep(delay)

        raise AsrUnavailableError(
            f"{self.provider}/{model} failed after {cfg.ASR_MAX_CALL_ATTEMPTS} attempts: {last_error}"
        )
