import asyncio
import os
import time

import pytest

from ms365_mcp.auth.models.catalog import OperationCatalog
from ms365_mcp.auth.models.errors import CacheLoadError, CacheSaveError, ProviderError
from ms365_mcp.auth.models.storage import CredentialKey
from ms365_mcp.auth.models.tokens import AcquiredToken, Account, AuthState
from ms365_mcp.auth.services.accounts import AccountRegistry
from ms365_mcp.auth.services.broker import TokenBroker
from ms365_mcp.auth.services.storage import CredentialStore

ALICE = Account(account_id="alice-home-id", username="alice@contoso.com")
BOB = Account(account_id="bob-home-id", username="bob@outlook.com")

CATALOG_ENTRIES = [
    {
        "pathPattern": "/me/messages",
        "method": "get",
        "toolName": "list-mail-messages",
        "scopes": ["Mail.Read"],
    },
    {
        "pathPattern": "/me/messages/{message-id}",
        "method": "delete",
        "toolName": "delete-mail-message",
        "scopes": ["Mail.ReadWrite"],
    },
    {
        "pathPattern": "/me",
        "method": "get",
        "toolName": "get-current-user",
        "scopes": ["User.Read"],
    },
    {
        "pathPattern": "/me/chats",
        "method": "get",
        "toolName": "list-chats",
        "scopes": ["Chat.Read"],
        "requiresWorkAccount": True,
    },
    {
        "pathPattern": "/sites",
        "method": "get",
        "toolName": "search-sharepoint-sites",
        "scopes": ["Sites.Read.All"],
        "requiresWorkAccount": True,
    },
]


class FakeIdentityProvider:
    """In-memory identity provider that records every call."""

    def __init__(self, accounts: list[Account]):
        self.accounts = list(accounts)
        self.silent_calls: list[tuple[list[str], Account]] = []
        self.device_calls: list[list[str]] = []
        self.removed: list[Account] = []
        self.deserialized: list[str] = []

        self.silent_error: Exception | None = None
        self.device_error: Exception | None = None
        self.remove_error: ProviderError | None = None
        self.device_account: Account | None = None
        self.device_gate: asyncio.Event | None = None
        self.device_message = (
            "To sign in, use a web browser to open the page "
            "https://microsoft.com/devicelogin and enter the code ABCD1234"
        )
        self.cache_blob = '{"AccessToken": {}, "Account": {}}'
        self._issued = 0

    async def list_accounts(self) -> list[Account]:
        return list(self.accounts)

    async def remove_account(self, account: Account) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(account)
        self.accounts = [a for a in self.accounts if a.account_id != account.account_id]

    async def acquire_token_silent(self, scopes, account) -> AcquiredToken:
        self.silent_calls.append((list(scopes), account))
        await asyncio.sleep(0)
        if self.silent_error is not None:
            raise self.silent_error
        self._issued += 1
        return AcquiredToken(
            access_token=f"silent-token-{self._issued}",
            expires_at=time.time() + 3600,
            account=account,
            scopes=tuple(scopes),
        )

    async def acquire_token_by_device_code(self, scopes, on_message) -> AcquiredToken:
        self.device_calls.append(list(scopes))
        on_message(self.device_message)
        if self.device_gate is not None:
            await self.device_gate.wait()
        if self.device_error is not None:
            raise self.device_error

        account = self.device_account or ALICE
        if account not in self.accounts:
            self.accounts.append(account)
        self._issued += 1
        return AcquiredToken(
            access_token=f"device-token-{self._issued}",
            expires_at=time.time() + 3600,
            account=account,
            scopes=tuple(scopes),
        )

    def serialize_cache(self) -> str:
        return self.cache_blob

    def deserialize_cache(self, data: str) -> None:
        if not data.startswith("{"):
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        self.deserialized.append(data)


class MemoryBackend:
    """Dict-backed secret backend that can be told to fail."""

    def __init__(self):
        self.entries: dict[CredentialKey, str] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.reads = 0
        self.writes = 0

    async def get(self, key: CredentialKey) -> str | None:
        self.reads += 1
        if self.fail_reads:
            raise CacheLoadError("backend unavailable")
        return self.entries.get(key)

    async def set(self, key: CredentialKey, value: str) -> None:
        self.writes += 1
        if self.fail_writes:
            raise CacheSaveError("backend unavailable")
        self.entries[key] = value

    async def delete(self, key: CredentialKey) -> None:
        if self.fail_writes:
            raise CacheSaveError("backend unavailable")
        self.entries.pop(key, None)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    for name in list(os.environ):
        if name.upper().startswith("MS365_MCP_"):
            monkeypatch.delenv(name)


@pytest.fixture
def catalog() -> OperationCatalog:
    return OperationCatalog.from_entries(CATALOG_ENTRIES)


@pytest.fixture
def alice() -> Account:
    return ALICE


@pytest.fixture
def bob() -> Account:
    return BOB


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider([ALICE, BOB])


@pytest.fixture
def vault() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def file_vault() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(vault, file_vault) -> CredentialStore:
    return CredentialStore(vault, file_vault)


@pytest.fixture
def state() -> AuthState:
    return AuthState(scopes=["Mail.ReadWrite", "User.Read"])


@pytest.fixture
def registry(provider, store, state) -> AccountRegistry:
    return AccountRegistry(provider, store, state)


@pytest.fixture
def broker(provider, registry, store, state) -> TokenBroker:
    return TokenBroker(provider, registry, store, state)
