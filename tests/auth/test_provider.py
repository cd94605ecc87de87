"""Tests for the MSAL-backed identity provider."""

from unittest import mock
from unittest.mock import MagicMock

import pytest

from ms365_mcp.auth.models.errors import ProviderError
from ms365_mcp.auth.models.tokens import Account
from ms365_mcp.auth.primitives.provider import MsalIdentityProvider

RAW_ACCOUNT = {
    "home_account_id": "alice-home-id",
    "local_account_id": "alice-oid",
    "username": "alice@contoso.com",
}
ALICE = Account(account_id="alice-home-id", username="alice@contoso.com")


class TestMsalIdentityProvider:
    def setup_method(self):
        self.provider = MsalIdentityProvider(
            "test-client-id", "https://login.microsoftonline.com/common"
        )
        self.app = MagicMock()
        self.app.get_accounts.return_value = [RAW_ACCOUNT]
        self.provider._app = self.app

    async def test_list_accounts_maps_raw_accounts(self):
        assert await self.provider.list_accounts() == [ALICE]

    async def test_remove_account_passes_raw_account(self):
        await self.provider.remove_account(ALICE)

        self.app.remove_account.assert_called_once_with(RAW_ACCOUNT)

    async def test_silent_acquisition_builds_token(self):
        # Arrange
        self.app.acquire_token_silent.return_value = {
            "access_token": "at",
            "expires_in": 3600,
            "scope": "Mail.ReadWrite User.Read",
        }

        # Act
        token = await self.provider.acquire_token_silent(["User.Read"], ALICE)

        # Assert
        assert token.access_token == "at"
        assert token.expires_at is not None
        assert token.account == ALICE
        assert token.scopes == ("Mail.ReadWrite", "User.Read")
        self.app.acquire_token_silent.assert_called_once_with(
            ["User.Read"], account=RAW_ACCOUNT
        )

    async def test_silent_miss_requires_interaction(self):
        self.app.acquire_token_silent.return_value = None

        with pytest.raises(ProviderError) as exc_info:
            await self.provider.acquire_token_silent(["User.Read"], ALICE)

        assert exc_info.value.error_code == "interaction_required"

    async def test_silent_error_result_carries_error_code(self):
        self.app.acquire_token_silent.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS70000: refresh token revoked",
        }

        with pytest.raises(ProviderError, match="AADSTS70000") as exc_info:
            await self.provider.acquire_token_silent(["User.Read"], ALICE)

        assert exc_info.value.error_code == "invalid_grant"

    async def test_unknown_account_is_rejected(self):
        stranger = Account(account_id="stranger", username="x@example.com")

        with pytest.raises(ProviderError) as exc_info:
            await self.provider.acquire_token_silent(["User.Read"], stranger)

        assert exc_info.value.error_code == "account_not_found"

    async def test_device_flow_reports_message_and_resolves_account(self):
        # Arrange
        self.app.initiate_device_flow.return_value = {
            "user_code": "ABCD1234",
            "message": "Enter ABCD1234 at https://microsoft.com/devicelogin",
            "expires_in": 900,
        }
        self.app.acquire_token_by_device_flow.return_value = {
            "access_token": "device-at",
            "expires_in": 3600,
            "id_token_claims": {"oid": "alice-oid"},
        }
        messages = []

        # Act
        token = await self.provider.acquire_token_by_device_code(
            ["User.Read"], messages.append
        )

        # Assert
        assert messages == ["Enter ABCD1234 at https://microsoft.com/devicelogin"]
        assert token.access_token == "device-at"
        assert token.account == ALICE

    async def test_device_flow_matches_account_by_username(self):
        self.app.initiate_device_flow.return_value = {"user_code": "X", "message": "m"}
        self.app.acquire_token_by_device_flow.return_value = {
            "access_token": "device-at",
            "id_token_claims": {"preferred_username": "alice@contoso.com"},
        }

        token = await self.provider.acquire_token_by_device_code(["User.Read"], print)

        assert token.account == ALICE
        assert token.expires_at is None

    async def test_device_flow_that_cannot_start_raises(self):
        # Arrange
        self.app.initiate_device_flow.return_value = {
            "error": "invalid_client",
            "error_description": "AADSTS7000218: client must be public",
        }
        on_message = MagicMock()

        # Act & Assert
        with pytest.raises(ProviderError, match="AADSTS7000218"):
            await self.provider.acquire_token_by_device_code(["User.Read"], on_message)
        on_message.assert_not_called()

    async def test_device_flow_error_result_raises(self):
        self.app.initiate_device_flow.return_value = {"user_code": "X", "message": "m"}
        self.app.acquire_token_by_device_flow.return_value = {
            "error": "expired_token",
            "error_description": "The device code has expired",
        }

        with pytest.raises(ProviderError) as exc_info:
            await self.provider.acquire_token_by_device_code(["User.Read"], print)

        assert exc_info.value.error_code == "expired_token"

    async def test_transport_failure_in_silent_acquisition_raises_provider_error(self):
        self.app.acquire_token_silent.side_effect = ConnectionError("network down")

        with pytest.raises(ProviderError, match="network down") as exc_info:
            await self.provider.acquire_token_silent(["User.Read"], ALICE)

        assert isinstance(exc_info.value.__cause__, ConnectionError)

    async def test_transport_failure_listing_accounts_raises_provider_error(self):
        self.app.get_accounts.side_effect = TimeoutError("read timed out")

        with pytest.raises(ProviderError):
            await self.provider.list_accounts()

    async def test_transport_failure_while_polling_raises_provider_error(self):
        # Arrange
        self.app.initiate_device_flow.return_value = {"user_code": "X", "message": "m"}
        self.app.acquire_token_by_device_flow.side_effect = ConnectionError(
            "connection reset"
        )
        on_message = MagicMock()

        # Act & Assert
        with pytest.raises(ProviderError, match="connection reset"):
            await self.provider.acquire_token_by_device_code(["User.Read"], on_message)
        on_message.assert_called_once_with("m")

    async def test_app_construction_failure_raises_provider_error(self):
        # Arrange
        self.provider._app = None

        # Act & Assert
        with mock.patch(
            "msal.PublicClientApplication",
            side_effect=ValueError("Unable to get authority configuration"),
        ):
            with pytest.raises(ProviderError, match="authority configuration"):
                await self.provider.list_accounts()

    def test_cache_round_trips_through_msal(self):
        blob = self.provider.serialize_cache()

        self.provider.deserialize_cache(blob)

        assert isinstance(blob, str)
