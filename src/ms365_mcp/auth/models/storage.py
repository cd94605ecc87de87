"""Credential storage models.

Describes the persisted records and the per-tier outcome reported by every
CredentialStore operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CredentialKey(Enum):
    """Logical records persisted by the credential store.

    The value is the keyring account name; fallback_filename is the file
    used when the keyring is unavailable.
    """

    TOKEN_CACHE = "msal-token-cache"
    SELECTED_ACCOUNT = "selected-account"

    @property
    def fallback_filename(self) -> str:
        if self is CredentialKey.TOKEN_CACHE:
            return ".token-cache.json"
        return ".selected-account.json"


class Tier(str, Enum):
    VAULT = "vault"
    FILE = "file"


class TierStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"  # Read succeeded but nothing was stored
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TierResult:
    tier: Tier
    status: TierStatus
    error: str | None = None


@dataclass
class StoreOutcome:
    """What happened on each storage tier during one operation."""

    value: str | None = None
    results: list[TierResult] = field(default_factory=list)

    def record(
        self, tier: Tier, status: TierStatus, error: str | None = None
    ) -> None:
        self.results.append(TierResult(tier=tier, status=status, error=error))

    def status_of(self, tier: Tier) -> TierStatus:
        """Status of a tier, SKIPPED if the tier was never attempted."""
        for result in self.results:
            if result.tier is tier:
                return result.status
        return TierStatus.SKIPPED

    @property
    def served_by(self) -> Tier | None:
        """The tier that completed the operation, if any."""
        for result in self.results:
            if result.status is TierStatus.OK:
                return result.tier
        return None

    @property
    def ok(self) -> bool:
        """True unless some tier failed and no tier succeeded."""
        return not self.failed_tiers or self.served_by is not None

    @property
    def failed_tiers(self) -> list[Tier]:
        return [r.tier for r in self.results if r.status is TierStatus.FAILED]


class SelectedAccountPointer(BaseModel):
    """Persisted pointer to the selected account."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str | None = Field(default=None, alias="accountId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
