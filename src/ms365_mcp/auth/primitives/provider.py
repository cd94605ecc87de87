"""Identity provider collaborator.

The auth services never talk to the identity platform directly. They go
through an IdentityProvider, which performs the actual grant exchanges and
owns the serialized token cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol

import msal

from ms365_mcp.auth.models.errors import ProviderError
from ms365_mcp.auth.models.tokens import AcquiredToken, Account

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class IdentityProvider(Protocol):
    """Protocol for the identity platform client.

    Token methods raise ProviderError when the platform refuses the request.
    """

    async def list_accounts(self) -> list[Account]: ...

    async def remove_account(self, account: Account) -> None: ...

    async def acquire_token_silent(
        self, scopes: list[str], account: Account
    ) -> AcquiredToken: ...

    async def acquire_token_by_device_code(
        self, scopes: list[str], on_message: ProgressCallback
    ) -> AcquiredToken:
        """Run the device code grant.

        Calls on_message once with the user instructions, then waits until
        the user completes sign-in or the code expires.
        """
        ...

    def serialize_cache(self) -> str: ...

    def deserialize_cache(self, data: str) -> None: ...


class MsalIdentityProvider:
    """IdentityProvider backed by an MSAL public client application.

    MSAL is synchronous, so every call that may touch the network runs in a
    worker thread. Any failure there, including transport errors from the
    HTTP stack underneath MSAL, is raised as ProviderError.
    """

    def __init__(self, client_id: str, authority: str):
        self.client_id = client_id
        self.authority = authority
        self.cache = msal.SerializableTokenCache()
        self._app: msal.PublicClientApplication | None = None

    @property
    def app(self) -> msal.PublicClientApplication:
        # Built lazily: MSAL resolves the authority when the app is created.
        if self._app is None:
            self._app = msal.PublicClientApplication(
                self.client_id, authority=self.authority, token_cache=self.cache
            )
        return self._app

    async def list_accounts(self) -> list[Account]:
        raw_accounts = await self._run(lambda: self.app.get_accounts())
        return [_to_account(raw) for raw in raw_accounts]

    async def remove_account(self, account: Account) -> None:
        raw = await self._run(self._find_raw_account, account.account_id)
        await self._run(lambda: self.app.remove_account(raw))

    async def acquire_token_silent(
        self, scopes: list[str], account: Account
    ) -> AcquiredToken:
        def acquire() -> dict[str, Any] | None:
            raw = self._find_raw_account(account.account_id)
            return self.app.acquire_token_silent(scopes, account=raw)

        result = await self._run(acquire)
        if not result:
            raise ProviderError(
                "No cached refresh token for this account", "interaction_required"
            )
        return self._to_acquired_token(result, account)

    async def acquire_token_by_device_code(
        self, scopes: list[str], on_message: ProgressCallback
    ) -> AcquiredToken:
        flow = await self._run(lambda: self.app.initiate_device_flow(scopes=scopes))
        if "user_code" not in flow:
            raise ProviderError(
                f"Could not start device code flow: "
                f"{flow.get('error_description', flow.get('error', 'unknown error'))}",
                flow.get("error"),
            )

        logger.debug(f"Device code issued, expires in {flow.get('expires_in')}s")
        on_message(flow["message"])

        try:
            result = await self._run(
                lambda: self.app.acquire_token_by_device_flow(flow)
            )
        except asyncio.CancelledError:
            # MSAL keeps polling in its thread until the flow expires.
            flow["expires_at"] = 0
            raise

        account = await self._run(self._account_from_claims, result)
        return self._to_acquired_token(result, account)

    def serialize_cache(self) -> str:
        return self.cache.serialize()

    def deserialize_cache(self, data: str) -> None:
        self.cache.deserialize(data)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking MSAL call in a worker thread.

        Transport and library failures surface as ProviderError.
        CancelledError is not an Exception and passes through.
        """
        try:
            return await asyncio.to_thread(func, *args)
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Identity provider request failed: {e}")
            raise ProviderError(f"Identity provider request failed: {e}") from e

    def _find_raw_account(self, account_id: str) -> dict[str, Any]:
        for raw in self.app.get_accounts():
            if raw.get("home_account_id") == account_id:
                return raw
        raise ProviderError(
            f"Account {account_id} is not in the token cache", "account_not_found"
        )

    def _account_from_claims(self, result: dict[str, Any]) -> Account | None:
        claims = result.get("id_token_claims") or {}
        for raw in self.app.get_accounts():
            if claims.get("oid") and raw.get("local_account_id") == claims["oid"]:
                return _to_account(raw)
            if (
                claims.get("preferred_username")
                and raw.get("username") == claims["preferred_username"]
            ):
                return _to_account(raw)
        return None

    def _to_acquired_token(
        self, result: dict[str, Any], account: Account | None
    ) -> AcquiredToken:
        if "access_token" not in result:
            raise ProviderError(
                result.get("error_description", "Token request failed"),
                result.get("error"),
            )

        expires_at = None
        if "expires_in" in result:
            expires_at = time.time() + int(result["expires_in"])

        return AcquiredToken(
            access_token=result["access_token"],
            expires_at=expires_at,
            account=account,
            scopes=tuple(result.get("scope", "").split()),
        )


def _to_account(raw: dict[str, Any]) -> Account:
    return Account(account_id=raw["home_account_id"], username=raw.get("username", ""))
