"""Two-tier credential persistence.

Entries live in the OS keyring (macOS Keychain, Windows Credential Locker,
Linux Secret Service). When the keyring cannot be used, a plaintext file in
the cache directory takes over.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ms365_mcp.auth.models.errors import CacheLoadError, CacheSaveError
from ms365_mcp.auth.models.storage import (
    CredentialKey,
    StoreOutcome,
    Tier,
    TierStatus,
)

logger = logging.getLogger(__name__)


class SecretBackend(Protocol):
    """A place credential entries can be stored.

    Implementations raise CacheLoadError / CacheSaveError on failure.
    """

    async def get(self, key: CredentialKey) -> str | None: ...

    async def set(self, key: CredentialKey, value: str) -> None: ...

    async def delete(self, key: CredentialKey) -> None:
        """Remove an entry. Removing a missing entry is not an error."""
        ...


class KeyringVault:
    """Secure platform vault backed by the keyring package."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    async def get(self, key: CredentialKey) -> str | None:
        try:
            return await asyncio.to_thread(
                keyring.get_password, self.service_name, key.value
            )
        except KeyringError as e:
            raise CacheLoadError(f"Keyring read failed: {e}") from e
        except Exception as e:
            raise CacheLoadError(f"Unexpected keyring error: {e}") from e

    async def set(self, key: CredentialKey, value: str) -> None:
        try:
            await asyncio.to_thread(
                keyring.set_password, self.service_name, key.value, value
            )
        except KeyringError as e:
            raise CacheSaveError(f"Keyring write failed: {e}") from e
        except Exception as e:
            raise CacheSaveError(f"Unexpected keyring error: {e}") from e

    async def delete(self, key: CredentialKey) -> None:
        try:
            await asyncio.to_thread(
                keyring.delete_password, self.service_name, key.value
            )
        except PasswordDeleteError:
            # Nothing stored under this key
            pass
        except KeyringError as e:
            raise CacheSaveError(f"Keyring delete failed: {e}") from e
        except Exception as e:
            raise CacheSaveError(f"Unexpected keyring error: {e}") from e


class FileVault:
    """Plaintext fallback: one file per entry in a fixed directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, key: CredentialKey) -> Path:
        return self.directory / key.fallback_filename

    async def get(self, key: CredentialKey) -> str | None:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(_read_if_exists, path)
        except (OSError, UnicodeDecodeError) as e:
            raise CacheLoadError(f"Cannot read {path}: {e}") from e

    async def set(self, key: CredentialKey, value: str) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(_write_private, path, value)
        except OSError as e:
            raise CacheSaveError(f"Cannot write {path}: {e}") from e

    async def delete(self, key: CredentialKey) -> None:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise CacheSaveError(f"Cannot remove {path}: {e}") from e


def _read_if_exists(path: Path) -> str | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


def _write_private(path: Path, value: str) -> None:
    # Owner read/write only, also for a file created earlier with wider mode.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(value)
    os.chmod(path, 0o600)


class CredentialStore:
    """Loads and saves credential entries, vault first, file second.

    Never raises for backend failures. Every call returns a StoreOutcome
    describing which tier was tried and what happened, and failures are
    logged. Writes are not atomic across the two tiers.
    """

    def __init__(self, vault: SecretBackend, fallback: SecretBackend):
        self.vault = vault
        self.fallback = fallback

    async def load(self, key: CredentialKey) -> StoreOutcome:
        """Read an entry. The file is only consulted if the vault has nothing."""
        outcome = StoreOutcome()

        try:
            value = await self.vault.get(key)
        except CacheLoadError as e:
            logger.warning(
                f"Keychain access failed for {key.value}, "
                f"falling back to file storage: {e}"
            )
            outcome.record(Tier.VAULT, TierStatus.FAILED, str(e))
        else:
            if value:
                outcome.value = value
                outcome.record(Tier.VAULT, TierStatus.OK)
                return outcome
            outcome.record(Tier.VAULT, TierStatus.EMPTY)

        try:
            value = await self.fallback.get(key)
        except CacheLoadError as e:
            # An unreadable entry is treated as an empty one
            logger.error(f"Error loading {key.value}: {e}")
            outcome.record(Tier.FILE, TierStatus.FAILED, str(e))
            return outcome

        if value:
            outcome.value = value
            outcome.record(Tier.FILE, TierStatus.OK)
        else:
            outcome.record(Tier.FILE, TierStatus.EMPTY)
        return outcome

    async def save(self, key: CredentialKey, value: str) -> StoreOutcome:
        """Write an entry. The file is only written if the vault write fails."""
        outcome = StoreOutcome()

        try:
            await self.vault.set(key, value)
        except CacheSaveError as e:
            logger.warning(
                f"Keychain save failed for {key.value}, "
                f"falling back to file storage: {e}"
            )
            outcome.record(Tier.VAULT, TierStatus.FAILED, str(e))
        else:
            outcome.record(Tier.VAULT, TierStatus.OK)
            return outcome

        try:
            await self.fallback.set(key, value)
        except CacheSaveError as e:
            logger.error(f"Error saving {key.value}: {e}")
            outcome.record(Tier.FILE, TierStatus.FAILED, str(e))
        else:
            outcome.record(Tier.FILE, TierStatus.OK)
        return outcome

    async def delete(self, key: CredentialKey) -> StoreOutcome:
        """Remove an entry from both tiers unconditionally."""
        outcome = StoreOutcome()

        for tier, backend in ((Tier.VAULT, self.vault), (Tier.FILE, self.fallback)):
            try:
                await backend.delete(key)
            except CacheSaveError as e:
                logger.warning(f"Deleting {key.value} from {tier.value} failed: {e}")
                outcome.record(tier, TierStatus.FAILED, str(e))
            else:
                outcome.record(tier, TierStatus.OK)

        return outcome
