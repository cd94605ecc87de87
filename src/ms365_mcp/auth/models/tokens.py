"""Token and account state models.

Contains the in-memory token record, provider results, and the mutable
state shared by the auth services.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Account:
    """A signed-in identity as reported by the identity provider.

    account_id is the provider's stable home account id. username is what
    we show to people.
    """

    account_id: str
    username: str


@dataclass
class TokenRecord:
    """Access token held in memory. Never persisted."""

    access_token: str
    expires_at: float | None = None  # Unix timestamp

    def is_valid(self, buffer_seconds: float = 30.0) -> bool:
        """Check if the token can still be reused.

        A token without a known expiry is never reused.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if self.expires_at is None:
            return False
        return time.time() < (self.expires_at - buffer_seconds)


@dataclass(frozen=True)
class AcquiredToken:
    """Result of a successful token request against the identity provider."""

    access_token: str
    expires_at: float | None = None
    account: Account | None = None
    scopes: tuple[str, ...] = ()

    def to_record(self) -> TokenRecord:
        return TokenRecord(access_token=self.access_token, expires_at=self.expires_at)


@dataclass
class AuthState:
    """Complete authentication state in one place.

    One instance is owned by the AuthManager and passed by reference to
    every service that reads or mutates it.
    """

    scopes: list[str] = field(default_factory=list)
    token: TokenRecord | None = None
    selected_account_id: str | None = None
    passthrough_token: str | None = None

    # Bumped on every invalidation so in-flight refreshes can detect that
    # the token they are about to cache belongs to a stale selection.
    generation: int = 0

    @property
    def is_passthrough(self) -> bool:
        return self.passthrough_token is not None

    def invalidate_token(self) -> None:
        self.token = None
        self.generation += 1
