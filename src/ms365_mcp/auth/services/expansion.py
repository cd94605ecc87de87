"""Work account scope upgrade.

Some Graph operations only work for work or school accounts and need extra
scopes. These are left out of the initial login and requested on demand.
"""

from __future__ import annotations

import logging

from ms365_mcp.auth.models.errors import DeviceCodeError, ProviderError
from ms365_mcp.auth.models.tokens import AuthState
from ms365_mcp.auth.primitives.provider import IdentityProvider, ProgressCallback
from ms365_mcp.auth.services.accounts import AccountRegistry
from ms365_mcp.auth.services.broker import TokenBroker
from ms365_mcp.auth.services.scopes import ScopeResolver

logger = logging.getLogger(__name__)

EXPANSION_BANNER = (
    "This feature requires additional permissions (work account scopes)"
)


class WorkAccountScopeExpander:
    def __init__(
        self,
        provider: IdentityProvider,
        registry: AccountRegistry,
        broker: TokenBroker,
        resolver: ScopeResolver,
        state: AuthState,
    ):
        self._provider = provider
        self._registry = registry
        self._broker = broker
        self._resolver = resolver
        self.state = state

    async def has_work_account_permissions(self) -> bool:
        """Check whether the current account already holds work account scopes.

        Asks for a single work account scope silently. Nothing is cached or
        persisted, and any failure is reported as False.
        """
        try:
            account = await self._registry.get_current_account()
        except ProviderError as e:
            logger.error(f"Error checking work account permissions: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error checking work account permissions: {e}")
            return False

        if account is None:
            return False

        work_scopes = self._resolver.work_account_scopes()
        if not work_scopes:
            logger.debug("Catalog declares no work account scopes")
            return False

        try:
            await self._provider.acquire_token_silent(work_scopes[:1], account)
        except ProviderError as e:
            logger.debug(f"Work account scope check failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error checking work account scopes: {e}")
            return False
        return True

    async def expand_to_work_account_scopes(
        self,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Sign in again with the full scope set, work account scopes included.

        On success the full set becomes the working scope set and the
        signed-in account becomes the selected one.

        Returns:
            True on success, False if the login failed or timed out
        """
        logger.info("Expanding to work account scopes...")
        all_scopes = sorted(self._resolver.build_all_scopes())

        try:
            acquired = await self._broker.run_device_code_flow(
                all_scopes, progress_callback, timeout, banner=EXPANSION_BANNER
            )
        except DeviceCodeError as e:
            logger.error(f"Error expanding to work account scopes: {e}")
            return False

        self.state.scopes = all_scopes
        await self._broker.commit_login(acquired, select_account=True)
        logger.info("Work account scope expansion successful")
        return True
