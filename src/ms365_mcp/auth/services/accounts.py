"""Signed-in account tracking.

Lists the accounts in the provider's token cache, decides which one is
current, and persists the user's choice.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from ms365_mcp.auth.models.errors import ProviderError
from ms365_mcp.auth.models.storage import (
    CredentialKey,
    SelectedAccountPointer,
    StoreOutcome,
)
from ms365_mcp.auth.models.tokens import Account, AuthState
from ms365_mcp.auth.primitives.provider import IdentityProvider
from ms365_mcp.auth.services.storage import CredentialStore

logger = logging.getLogger(__name__)


class AccountRegistry:
    """Tracks the current account for a shared AuthState.

    Selection changes are persisted best-effort: a failed write is logged by
    the store and the in-memory selection still takes effect.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: CredentialStore,
        state: AuthState,
    ):
        self._provider = provider
        self._store = store
        self.state = state

    async def list_accounts(self) -> list[Account]:
        return await self._provider.list_accounts()

    async def find_account(self, account_id: str) -> Account | None:
        for account in await self.list_accounts():
            if account.account_id == account_id:
                return account
        return None

    async def get_current_account(self) -> Account | None:
        """Resolve the account to act on.

        Returns the selected account when it is still in the cache. A stale
        selection falls back to the first cached account, as does having no
        selection at all.
        """
        accounts = await self.list_accounts()
        if not accounts:
            return None

        selected_id = self.state.selected_account_id
        if selected_id:
            for account in accounts:
                if account.account_id == selected_id:
                    return account
            # TODO: surface the stale selection to callers instead of only logging it
            logger.warning(
                f"Selected account {selected_id} not found, "
                "falling back to first account"
            )

        return accounts[0]

    async def select_account(self, account_id: str) -> bool:
        account = await self.find_account(account_id)
        if account is None:
            logger.error(f"Account with ID {account_id} not found")
            return False

        self.state.selected_account_id = account_id
        await self.save_selection()

        # Force the next token request to acquire for the new account
        self.state.invalidate_token()

        logger.info(f"Selected account: {account.username} ({account_id})")
        return True

    async def remove_account(self, account_id: str) -> bool:
        account = await self.find_account(account_id)
        if account is None:
            logger.error(f"Account with ID {account_id} not found")
            return False

        current = await self.get_current_account()

        try:
            await self._provider.remove_account(account)
        except ProviderError as e:
            logger.error(f"Failed to remove account {account_id}: {e}")
            return False

        await self._store.save(
            CredentialKey.TOKEN_CACHE, self._provider.serialize_cache()
        )

        if self.state.selected_account_id == account_id:
            self.state.selected_account_id = None
            await self.save_selection()

        if current is not None and current.account_id == account_id:
            self.state.invalidate_token()

        logger.info(f"Removed account: {account.username} ({account_id})")
        return True

    async def load_selection(self) -> None:
        """Restore the persisted selection into the shared state."""
        outcome = await self._store.load(CredentialKey.SELECTED_ACCOUNT)
        if outcome.value is None:
            return

        try:
            pointer = SelectedAccountPointer.model_validate_json(outcome.value)
        except ValidationError as e:
            logger.error(f"Error loading selected account: {e}")
            return

        self.state.selected_account_id = pointer.account_id
        if pointer.account_id:
            logger.info(f"Loaded selected account: {pointer.account_id}")

    async def save_selection(self) -> StoreOutcome:
        pointer = SelectedAccountPointer(account_id=self.state.selected_account_id)
        return await self._store.save(CredentialKey.SELECTED_ACCOUNT, pointer.to_json())

    async def clear_selection(self) -> StoreOutcome:
        """Forget the selection in memory and in both storage tiers."""
        self.state.selected_account_id = None
        return await self._store.delete(CredentialKey.SELECTED_ACCOUNT)
