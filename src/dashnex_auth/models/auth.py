from pydantic import Field, field_validator

from .common import BasePydanticModel, ServerPayloadModel

DEFAULT_BASE_URL = "https://dashnex.com"


class ClientConfig(BasePydanticModel): # Static configuration for one OAuth client instance
    model_config = {
        "extra": "forbid",
        "populate_by_name": True,
        "frozen": True,
    }

    client_id: str = Field(..., min_length=1)
    client_secret: str | None = None # Only for confidential clients; public clients rely on PKCE
    redirect_uri: str = Field(..., min_length=1) # Kept verbatim, must match the registered value exactly
    base_url: str = Field(default=DEFAULT_BASE_URL)

    @field_validator("client_secret", mode="before")
    @classmethod
    def _empty_secret_is_absent(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: str | None) -> str:
        if not value:
            return DEFAULT_BASE_URL
        return str(value).rstrip("/")

    @property
    def is_confidential(self) -> bool:
        return self.client_secret is not None

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.base_url}/oauth/v2/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/oauth/v2/token"

class TokenRequest(BasePydanticModel):
    grant_type: str
    code: str | None = None # For authorization_code grant
    redirect_uri: str | None = None # Required for authorization_code
    code_verifier: str | None = None # For PKCE
    refresh_token: str | None = None # For refresh_token grant
    client_id: str
    client_secret: str | None = None # Confidential clients only

class TokenResponse(ServerPayloadModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    state: str | None = None # Some servers echo the authorization state here
    token_type: str | None = None
    expires_in: int | None = None
    scope: str | None = None

class OAuthError(ServerPayloadModel): # RFC 6749, Section 5.2
    error: str
    error_description: str | None = None
    error_uri: str | None = None
