"""
Gemini evaluator calls.

One ``attempt`` is one ``generate_content`` request on a (credential,
model) pair, folded into an outcome value for the rotation policy.
"""

import logging
from typing import Dict, Optional

from google import genai
from google.genai import errors as genai_errors

from configs.config import get_config
from src.evaluation.models import (
    InvalidOutput,
    ProviderError,
    QuotaExhausted,
    RateLimited,
    Success,
)
from src.evaluation.parsing import normalize_response, parse_json, validate_response
from src.quota.classifier import QuotaErrorClassifier, QuotaExhaustedError
from src.quota.pool import Credential

logger = logging.getLogger(__name__)

cfg = get_config()


class GeminiEvaluator:
    """Calls Gemini with a credential from the quota pool."""

    def __init__(self, classifier: Optional[QuotaErrorClassifier] = None,
                 client_factory=None):
        self.classifier = classifier or QuotaErrorClassifier()
        self._client_factory = client_factory or (lambda api_key: genai.Client(api_key=api_key))
        self._clients: Dict[str, object] = {}

    def _client(self, credential: Credential):
        client = self._clients.get(credential.credential_id)
        if client is None:
            client = self._client_factory(credential.secret)
            self._clients[credential.credential_id] = client
        return client

    def attempt(self, credential: Credential, model: str, prompt: str, expected_answers: int):
        try:
            response = self._client(credential).models.generate_content(
                model=model,
                contents=prompt,
                config={
                    "temperature": cfg.LLM_TEMPERATURE,
                    "max_output_tokens": cfg.LLM_MAX_OUTPUT_TOKENS,
                    "response_mime_type": "application/json",
                },
            )
        except genai_errors.APIError as exc:
            message = exc.message or str(exc)
            quota_error = self.classifier.to_exception(message, status_code=exc.code, model=model)
            if isinstance(quota_error, QuotaExhaustedError):
                return QuotaExhausted(message=message)
            if quota_error is not None:
                return RateLimited(retry_after=quota_error.retry_after, message=message)
            logger.warning("Gemini %s error on %s: %s %s", model, credential.credential_id, exc.code, message)
            return ProviderError(message=f"{exc.code}: {message}")
        except Exception as exc:
            logger.warning("Gemini %s request failed on %s: %s", model, credential.credential_id, exc)
            return ProviderError(message=str(exc))

        parsed = normalize_response(parse_json(response.text or ""))
        issues = validate_response(parsed, expected_answers)
        if issues:
            logger.warning("Gemini %s returned unusable output: %s", model, "; ".join(issues))
            return InvalidOutput(issues=issues)
        return Success(payload=parsed)
