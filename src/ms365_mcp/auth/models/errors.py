"""Exception hierarchy for authentication and token lifecycle errors.

Each failure mode gets its own type so callers can decide whether to retry,
fall back to an interactive login, or give up.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base exception for all authentication errors."""

    pass


class CatalogError(AuthError):
    """Raised when the operation catalog is missing or malformed."""

    pass


class CredentialStoreError(AuthError):
    """Base exception for credential persistence failures.

    Never escapes CredentialStore; backends raise it and the store records
    the failure in its outcome.
    """

    pass


class CacheLoadError(CredentialStoreError):
    """Raised when a backend cannot read a stored entry."""

    pass


class CacheSaveError(CredentialStoreError):
    """Raised when a backend cannot write or delete a stored entry."""

    pass


class ProviderError(AuthError):
    """Raised by identity provider adapters when a token request fails."""

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


class NoAccountError(AuthError):
    """Raised when a token is requested but no account is signed in."""

    pass


class AccountNotFoundError(AuthError):
    """Raised when a token is requested for an unknown account id."""

    pass


class SilentAcquisitionError(AuthError):
    """Raised when a token cannot be obtained without user interaction.

    The caller has to start a device code login to recover.
    """

    pass


class DeviceCodeError(AuthError):
    """Raised when the device code login fails."""

    pass


class DeviceCodeTimeoutError(DeviceCodeError):
    """Raised when the user did not finish the device code login in time."""

    pass
