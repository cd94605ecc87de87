"""Runtime configuration using pydantic-settings.

Every field can be set through an environment variable with the MS365_MCP_
prefix (MS365_MCP_CLIENT_ID, MS365_MCP_TENANT_ID, MS365_MCP_OAUTH_TOKEN,
MS365_MCP_CACHE_DIR, ...) or a .env file in the working directory.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CLIENT_ID = "084a3e9f-a9f4-43f7-89f9-d229cf97853e"

# Plaintext fallback files live next to the installed package.
DEFAULT_CACHE_DIR = Path(__file__).resolve().parent.parent


class AuthSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MS365_MCP_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    client_id: str = DEFAULT_CLIENT_ID
    tenant_id: str = "common"
    oauth_token: str | None = None  # Enables bearer passthrough
    cache_dir: Path = DEFAULT_CACHE_DIR
    service_name: str = "ms-365-mcp-server"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    http_timeout: float = 30.0

    @field_validator("oauth_token")
    @classmethod
    def empty_token_is_none(cls, v: str | None) -> str | None:
        return v or None

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}"
