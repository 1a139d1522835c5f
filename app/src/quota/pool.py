"""
Quota pool for provider credentials.

A ``QuotaPool`` is a value owned by one caller (one stage worker run). It
holds a snapshot of the provider's active credentials and its own rotation
cursor; nothing here is module-global. Exhaustion flags are persisted
through the credential repository and mirrored into the snapshot so the
same run never picks a pair it has just marked.

Flags only ever flip false → true during a day, so concurrent writers need
no coordination: the last write wins and every write says the same thing.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from commons import today_utc
from src.database import credential_repository
from src.database.credential_repository import quota_key

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    credential_id: str
    provider: str
    secret: str
    error_count: int = 0
    model_quota: Dict[str, Dict] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict) -> "Credential":
        return cls(
            credential_id=record["credential_id"],
            provider=record["provider"],
            secret=record["secret"],
            error_count=int(record.get("error_count") or 0),
            model_quota=dict(record.get("model_quota") or {}),
        )

    def __repr__(self) -> str:
        return f"Credential({self.credential_id!r}, provider={self.provider!r})"


class QuotaPool:
    """Per-(credential, model) daily quota tracking with explicit rotation."""

    def __init__(
        self,
        provider: str,
        loader: Callable[[str], List[Dict]] = credential_repository.list_active_credentials,
        marker: Callable[[str, str, str], bool] = credential_repository.mark_model_exhausted,
        resetter: Callable[[str, Optional[str]], bool] = credential_repository.reset_model_quota,
        error_counter: Callable[[str], bool] = credential_repository.increment_error_count,
        today: Callable[[], str] = today_utc,
    ):
        self.provider = provider
        self._loader = loader
        self._marker = marker
        self._resetter = resetter
        self._error_counter = error_counter
        self._today = today
        self._credentials: List[Credential] = []
        self._cursor = 0
        self._loaded = False

    # ── Snapshot ─────────────────────────────────────────────────────────

    def rewind(self) -> None:
        """Reload credentials and move the cursor back to the best one."""
        records = self._loader(self.provider)
        self._credentials = sorted(
            (Credential.from_record(r) for r in records),
            key=lambda c: c.error_count,
        )
        self._cursor = 0
        self._loaded = True
        logger.debug(
            "Quota pool %s loaded %d credentials", self.provider, len(self._credentials)
        )

    @property
    def credentials(self) -> List[Credential]:
        if not self._loaded:
            self.rewind()
        return list(self._credentials)

    # ── Queries ──────────────────────────────────────────────────────────

    def is_exhausted(self, credential: Credential, model_name: str) -> bool:
        """True iff the model's flag is set and dated today."""
        flag = credential.model_quota.get(quota_key(model_name)) or {}
        return bool(flag.get("exhausted")) and flag.get("exhausted_date") == self._today()

    def usable_models(self, credential: Credential,
                      model_candidates: Sequence[str]) -> List[str]:
        return [m for m in model_candidates if not self.is_exhausted(credential, m)]

    def eligible(self, model_candidates: Sequence[str]) -> List[Credential]:
        """Credentials with at least one usable requested model, best first."""
        return [c for c in self.credentials if self.usable_models(c, model_candidates)]

    # ── Rotation ─────────────────────────────────────────────────────────

    def checkout(self, model_candidates: Sequence[str]) -> Optional[Credential]:
        """
        Next credential at or after the cursor that still has quota for one of
        ``model_candidates``; advances the cursor past it. None once the
        rotation has passed every credential (call ``rewind`` to start over).
        """
        if not self._loaded:
            self.rewind()
        while self._cursor < len(self._credentials):
            credential = self._credentials[self._cursor]
            self._cursor += 1
            if self.usable_models(credential, model_candidates):
                logger.debug(
                    "Checked out %s for %s", credential.credential_id, list(model_candidates)
                )
                return credential
        logger.warning(
            "No %s credential available for %s", self.provider, list(model_candidates)
        )
        return None

    # ── Mutation ─────────────────────────────────────────────────────────

    def mark_exhausted(self, credential_id: str, model_name: str) -> None:
        """Persist today's exhaustion of (credential, model) and mirror it locally."""
        day = self._today()
        self._marker(credential_id, model_name, day)
        for credential in self._credentials:
            if credential.credential_id == credential_id:
                credential.model_quota[quota_key(model_name)] = {
                    "exhausted": True,
                    "exhausted_date": day,
                }

    def reset(self, credential_id: str, model_name: Optional[str] = None) -> None:
        """Clear an exhaustion flag (all models when ``model_name`` is None)."""
        self._resetter(credential_id, model_name)
        for credential in self._credentials:
            if credential.credential_id != credential_id:
                continue
            if model_name:
                credential.model_quota.pop(quota_key(model_name), None)
            else:
                credential.model_quota.clear()

    def record_error(self, credential_id: str) -> None:
        """Count a non-quota failure; credentials with fewer errors are tried first."""
        self._error_counter(credential_id)
        for credential in self._credentials:
            if credential.credential_id == credential_id:
                credential.error_count += 1
