"""Access token acquisition and lifecycle.

Hands out access tokens for the current account, refreshing them silently
when they expire, and runs the interactive device code login when the user
has to sign in.

Token states:
    unauthenticated --device code--> authenticated
    authenticated --expiry or force_refresh--> silent refresh
        --> authenticated, or SilentAcquisitionError (new device code login)
    passthrough: an externally supplied token, never refreshed here
"""

from __future__ import annotations

import asyncio
import logging

from ms365_mcp.auth.models.errors import (
    AccountNotFoundError,
    DeviceCodeError,
    DeviceCodeTimeoutError,
    NoAccountError,
    ProviderError,
    SilentAcquisitionError,
)
from ms365_mcp.auth.models.storage import CredentialKey, StoreOutcome
from ms365_mcp.auth.models.tokens import AcquiredToken, AuthState
from ms365_mcp.auth.primitives.provider import IdentityProvider, ProgressCallback
from ms365_mcp.auth.services.accounts import AccountRegistry
from ms365_mcp.auth.services.storage import CredentialStore

logger = logging.getLogger(__name__)

# Provider error codes meaning the user never finished signing in
DEVICE_CODE_EXPIRED_ERRORS = frozenset(
    {"expired_token", "code_expired", "authorization_pending"}
)

LOGIN_HINT = 'After login run the "verify login" command'


class TokenBroker:
    """Issues access tokens for the account chosen by the AccountRegistry.

    Concurrent get_token calls share one silent refresh: the refresh runs
    under a lock and waiters re-check the cached token before acquiring.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        registry: AccountRegistry,
        store: CredentialStore,
        state: AuthState,
    ):
        self._provider = provider
        self._registry = registry
        self._store = store
        self.state = state
        self._refresh_lock = asyncio.Lock()

    @property
    def is_passthrough(self) -> bool:
        return self.state.is_passthrough

    def set_bearer_token(self, token: str) -> None:
        """Switch to passthrough mode for the lifetime of this broker.

        The caller owns the token: it is returned as-is and never refreshed.
        """
        if not token:
            raise ValueError("Bearer token must not be empty")
        self.state.passthrough_token = token
        logger.info("Using externally supplied bearer token")

    def _cached_token(self) -> str | None:
        token = self.state.token
        if token is not None and token.is_valid():
            return token.access_token
        return None

    async def get_token(self, force_refresh: bool = False) -> str:
        """Get an access token for the current account.

        Args:
            force_refresh: Ignore the cached token and acquire a new one

        Returns:
            Access token

        Raises:
            NoAccountError: If nobody is signed in
            SilentAcquisitionError: If the provider requires interaction
        """
        if self.state.passthrough_token is not None:
            return self.state.passthrough_token

        if not force_refresh:
            cached = self._cached_token()
            if cached is not None:
                return cached

        async with self._refresh_lock:
            if not force_refresh:
                # Another caller may have refreshed while we waited
                cached = self._cached_token()
                if cached is not None:
                    return cached

            account = await self._registry.get_current_account()
            if account is None:
                raise NoAccountError("No account signed in, device code login required")

            generation = self.state.generation
            try:
                acquired = await self._provider.acquire_token_silent(
                    self.state.scopes, account
                )
            except ProviderError as e:
                logger.error(f"Silent token acquisition failed: {e}")
                raise SilentAcquisitionError("Silent token acquisition failed") from e
            except Exception as e:
                logger.error(f"Unexpected error during silent token acquisition: {e}")
                raise SilentAcquisitionError("Silent token acquisition failed") from e

            if self.state.generation == generation:
                self.state.token = acquired.to_record()
            else:
                logger.debug("Account selection changed during refresh, not caching")

            return acquired.access_token

    async def get_token_for_account(self, account_id: str) -> str:
        """Silently acquire a token for a specific account.

        Leaves the cached token and the selection untouched.

        Raises:
            AccountNotFoundError: If the account is not in the provider cache
            SilentAcquisitionError: If the provider requires interaction
        """
        account = await self._registry.find_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account with ID {account_id} not found")

        try:
            acquired = await self._provider.acquire_token_silent(
                self.state.scopes, account
            )
        except ProviderError as e:
            logger.error(f"Failed to get token for account {account_id}: {e}")
            raise SilentAcquisitionError(
                f"Silent token acquisition failed for account {account_id}"
            ) from e
        except Exception as e:
            logger.error(f"Unexpected error getting token for account {account_id}: {e}")
            raise SilentAcquisitionError(
                f"Silent token acquisition failed for account {account_id}"
            ) from e

        return acquired.access_token

    async def acquire_token_by_device_code(
        self,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> str:
        """Sign in interactively with the device code flow.

        Args:
            progress_callback: Receives the sign-in instructions exactly once.
                Without one the instructions are logged.
            timeout: Seconds to wait for the user before giving up

        Returns:
            Access token for the newly signed-in account

        Raises:
            DeviceCodeTimeoutError: If the user did not finish in time
            DeviceCodeError: If the login failed
        """
        acquired = await self.run_device_code_flow(
            self.state.scopes, progress_callback, timeout
        )
        await self.commit_login(acquired)
        return acquired.access_token

    async def run_device_code_flow(
        self,
        scopes: list[str],
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
        banner: str | None = None,
    ) -> AcquiredToken:
        """Run the device code flow for the given scopes.

        Mutates no state; use commit_login to adopt the result.
        """
        delivered = False

        def on_message(message: str) -> None:
            nonlocal delivered
            if delivered:
                return
            delivered = True

            text = _format_instructions(message, banner)
            if progress_callback is not None:
                progress_callback(text)
            else:
                logger.warning(text)
            logger.info("Device code login initiated")

        logger.info("Requesting device code...")
        logger.info(f"Requesting scopes: {', '.join(scopes)}")

        try:
            acquired = await asyncio.wait_for(
                self._provider.acquire_token_by_device_code(scopes, on_message),
                timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Device code login not completed within {timeout}s")
            raise DeviceCodeTimeoutError(
                f"Device code login not completed within {timeout}s"
            ) from e
        except ProviderError as e:
            if e.error_code in DEVICE_CODE_EXPIRED_ERRORS:
                logger.error(f"Device code expired: {e}")
                raise DeviceCodeTimeoutError(f"Device code expired: {e}") from e
            logger.error(f"Error in device code flow: {e}")
            raise DeviceCodeError(f"Device code login failed: {e}") from e
        except Exception as e:
            logger.error(f"Unexpected error in device code flow: {e}")
            raise DeviceCodeError(f"Device code login failed: {e}") from e

        logger.info(f"Granted scopes: {', '.join(acquired.scopes) or 'none'}")
        logger.info("Device code login successful")
        return acquired

    async def commit_login(
        self, acquired: AcquiredToken, select_account: bool = False
    ) -> None:
        """Adopt a freshly acquired token and persist the provider cache.

        The signed-in account becomes the selection when nothing is selected
        yet, or always when select_account is set.
        """
        self.state.invalidate_token()
        self.state.token = acquired.to_record()

        account = acquired.account
        if account is not None and (
            select_account or not self.state.selected_account_id
        ):
            self.state.selected_account_id = account.account_id
            await self._registry.save_selection()
            logger.info(f"Selected account after login: {account.username}")

        await self.save_cache()

    async def load_cache(self) -> None:
        """Load the persisted provider cache. An unreadable cache counts as empty."""
        outcome = await self._store.load(CredentialKey.TOKEN_CACHE)
        if outcome.value is None:
            return

        try:
            self._provider.deserialize_cache(outcome.value)
        except ValueError as e:
            logger.error(f"Error loading token cache: {e}")

    async def save_cache(self) -> StoreOutcome:
        return await self._store.save(
            CredentialKey.TOKEN_CACHE, self._provider.serialize_cache()
        )

    async def clear_cache(self) -> StoreOutcome:
        self.state.invalidate_token()
        return await self._store.delete(CredentialKey.TOKEN_CACHE)


def _format_instructions(message: str, banner: str | None = None) -> str:
    lines = [banner] if banner else []
    lines.extend([message, LOGIN_HINT])
    return "\n" + "\n".join(lines) + "\n"
