"""Authentication manager for the Microsoft 365 MCP server.

Wires the scope resolver, credential store, account registry, token broker
and scope expander around one shared AuthState, and exposes the surface the
tool layer consumes.

Example:
    manager = AuthManager(AuthSettings())
    await manager.initialize()
    token = await manager.get_token()
    ...
    await manager.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from ms365_mcp.auth.models.catalog import OperationCatalog
from ms365_mcp.auth.models.errors import AuthError, ProviderError
from ms365_mcp.auth.models.tokens import Account, AuthState
from ms365_mcp.auth.primitives.provider import (
    IdentityProvider,
    MsalIdentityProvider,
    ProgressCallback,
)
from ms365_mcp.auth.services.accounts import AccountRegistry
from ms365_mcp.auth.services.broker import TokenBroker
from ms365_mcp.auth.services.expansion import WorkAccountScopeExpander
from ms365_mcp.auth.services.scopes import ScopeResolver
from ms365_mcp.auth.services.storage import CredentialStore, FileVault, KeyringVault
from ms365_mcp.config import AuthSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginTestResult:
    success: bool
    message: str
    user_data: dict[str, str] | None = None


class AuthManager:
    """Owns all authentication state for one process.

    Construction is synchronous and does no I/O. Call initialize() once to
    load persisted state, and close() on shutdown.
    """

    def __init__(
        self,
        settings: AuthSettings | None = None,
        catalog: OperationCatalog | None = None,
        provider: IdentityProvider | None = None,
        store: CredentialStore | None = None,
    ):
        """Initialize the auth manager.

        Args:
            settings: Runtime settings, read from the environment if omitted
            catalog: Operation catalog, the bundled one if omitted
            provider: Identity provider, an MSAL public client if omitted
            store: Credential store, keyring with file fallback if omitted
        """
        self.settings = settings or AuthSettings()
        self.catalog = catalog or OperationCatalog.load_default()
        self.resolver = ScopeResolver(self.catalog)

        scopes = sorted(self.resolver.build_scopes())
        logger.info(f"Using scopes: {', '.join(scopes)}")
        self.state = AuthState(scopes=scopes)

        self.provider = provider or MsalIdentityProvider(
            self.settings.client_id, self.settings.authority
        )
        self.store = store or CredentialStore(
            KeyringVault(self.settings.service_name),
            FileVault(self.settings.cache_dir),
        )

        self.accounts = AccountRegistry(self.provider, self.store, self.state)
        self.broker = TokenBroker(self.provider, self.accounts, self.store, self.state)
        self.expander = WorkAccountScopeExpander(
            self.provider, self.accounts, self.broker, self.resolver, self.state
        )

        if self.settings.oauth_token:
            self.broker.set_bearer_token(self.settings.oauth_token)

        self._http_client = httpx.AsyncClient(timeout=self.settings.http_timeout)

    async def initialize(self) -> None:
        """Load the persisted token cache and account selection."""
        await self.broker.load_cache()
        await self.accounts.load_selection()

    @property
    def scopes(self) -> list[str]:
        return list(self.state.scopes)

    @property
    def selected_account_id(self) -> str | None:
        return self.state.selected_account_id

    async def set_oauth_token(self, token: str) -> None:
        self.broker.set_bearer_token(token)

    async def get_token(self, force_refresh: bool = False) -> str:
        return await self.broker.get_token(force_refresh)

    async def get_token_for_account(self, account_id: str) -> str:
        return await self.broker.get_token_for_account(account_id)

    async def acquire_token_by_device_code(
        self,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> str:
        return await self.broker.acquire_token_by_device_code(
            progress_callback, timeout
        )

    async def get_current_account(self) -> Account | None:
        return await self.accounts.get_current_account()

    async def list_accounts(self) -> list[Account]:
        return await self.accounts.list_accounts()

    async def select_account(self, account_id: str) -> bool:
        return await self.accounts.select_account(account_id)

    async def remove_account(self, account_id: str) -> bool:
        return await self.accounts.remove_account(account_id)

    async def has_work_account_permissions(self) -> bool:
        return await self.expander.has_work_account_permissions()

    async def expand_to_work_account_scopes(
        self,
        progress_callback: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> bool:
        return await self.expander.expand_to_work_account_scopes(
            progress_callback, timeout
        )

    def requires_work_account_scope(self, tool_name: str) -> bool:
        """Whether a tool is restricted to work or school accounts."""
        return self.resolver.requires_work_account(tool_name)

    async def logout(self) -> bool:
        """Sign out every account and wipe all persisted credentials.

        Raises:
            ProviderError: If an account cannot be removed from the cache
        """
        try:
            for account in await self.accounts.list_accounts():
                await self.provider.remove_account(account)
        except ProviderError as e:
            logger.error(f"Error during logout: {e}")
            raise

        await self.broker.clear_cache()
        await self.accounts.clear_selection()
        logger.info("Logged out all accounts")
        return True

    async def test_login(self) -> LoginTestResult:
        """Check that a token can be obtained and Microsoft Graph accepts it."""
        logger.info("Testing login...")

        try:
            token = await self.get_token()
        except AuthError as e:
            logger.error(f"Login test failed: {e}")
            return LoginTestResult(success=False, message=f"Login failed: {e}")

        logger.info("Token retrieved successfully, testing Graph API access...")

        try:
            response = await self._http_client.get(
                f"{self.settings.graph_base_url}/me",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Error fetching user data: {e}")
            return LoginTestResult(
                success=False,
                message=f"Login successful but Graph API access failed: {e}",
            )

        if not 200 <= response.status_code < 300:
            logger.error(
                f"Graph API user data fetch failed: "
                f"{response.status_code} - {response.text}"
            )
            return LoginTestResult(
                success=False,
                message=(
                    "Login successful but Graph API access failed: "
                    f"{response.status_code}"
                ),
            )

        user_data = response.json()
        logger.info("Graph API user data fetch successful")
        return LoginTestResult(
            success=True,
            message="Login successful",
            user_data={
                "displayName": user_data.get("displayName", ""),
                "userPrincipalName": user_data.get("userPrincipalName", ""),
            },
        )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
