"""Configuration management for DashNex Auth."""

import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.auth import DEFAULT_BASE_URL, ClientConfig


class OAuthClientDetails(BaseModel): # Remains BaseModel, nested under Config (BaseSettings)
    """Details for the pre-registered DashNex OAuth client."""
    client_id: Optional[str] = Field(None, description="Client ID issued by DashNex.")
    client_secret: Optional[str] = Field(None, description="Client secret. Leave unset for public clients, which use PKCE.")
    redirect_uri: str = Field(default="http://localhost:8080/oauth/callback", description="Redirect URI registered for the client.")
    base_url: str = Field(default=DEFAULT_BASE_URL, description="Authorization server base URL.")
    scope: str = Field(default="", description="Scope requested when building the authorization URL.")

    def to_client_config(self) -> ClientConfig:
        if not self.client_id:
            raise ValueError("client_id is not configured (set DASHNEX_AUTH_CLIENT__CLIENT_ID).")
        return ClientConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            base_url=self.base_url,
        )

class HTTPClientConfig(BaseModel):
    """Configuration for the aiohttp session used against the authorization server."""
    request_timeout_seconds: float = Field(default=30.0, ge=1.0, description="Total timeout for a single HTTP request.")
    connect_timeout_seconds: float = Field(default=10.0, ge=1.0, description="Timeout for establishing a connection.")
    connection_pool_total_limit: int = Field(default=100, ge=1, description="Total connection pool limit for aiohttp session.")
    connection_pool_per_host_limit: int = Field(default=30, ge=1, description="Per-host connection pool limit for aiohttp session.")
    connection_pool_dns_cache_ttl_seconds: int = Field(default=300, ge=0, description="DNS cache TTL in seconds for aiohttp session.")
    ssl_verify: bool = Field(default=True, description="Enable/disable SSL certificate verification.")
    token_request_method: Literal["POST", "GET"] = Field(
        default="POST",
        description="How the token endpoint is called. 'GET' sends the parameters in the query string "
                    "and exists only for legacy deployments.",
    )
    user_agent: str = Field(default="dashnex-auth-python", description="User-Agent prefix for outgoing requests.")

class StorageConfig(BaseModel):
    """Configuration for token persistence."""
    method: Literal["memory", "keyring", "file"] = Field(default="keyring", description="Token storage backend.")
    key_prefix: str = Field(default="dashnex", description="Namespace prefix for stored keys.")
    keyring_service_name: str = Field(default="dashnex_auth_tokens", description="Service name for keyring storage.")
    encrypted_token_file_path: Optional[Path] = Field(None, description="Path for the encrypted token file.")

class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format ('json' or 'console')")
    file: Optional[Path] = Field(default=None, description="Log file path")


class Config(BaseSettings):
    """Main configuration for DashNex Auth. Loads from environment variables prefixed with DASHNEX_AUTH_."""

    model_config = SettingsConfigDict(
        env_prefix='DASHNEX_AUTH_',
        env_nested_delimiter='__', # e.g., DASHNEX_AUTH_HTTP__SSL_VERIFY
        extra='ignore',
        env_file='.env',
        env_file_encoding='utf-8'
    )

    client: OAuthClientDetails = Field(default_factory=OAuthClientDetails)
    http: HTTPClientConfig = Field(default_factory=HTTPClientConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, file_path: Path) -> "Config":
        """Create configuration strictly from a JSON file.
        Note: This does not layer with environment variables.
        """
        with open(file_path) as f:
            config_data = json.load(f)
        return cls.model_validate(config_data)
