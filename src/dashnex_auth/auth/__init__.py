"""
Authentication module for DashNex Auth.

OAuth 2.0 Authorization Code flow with PKCE, transparent token refresh,
and pluggable token storage.
"""
from .oauth_client import DashNexOAuthClient, HTTPResponse
from .pkce import (
    default_random_source,
    derive_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .token_storage import (
    BaseTokenStorage,
    EncryptedFileTokenStorage,
    KeyringTokenStorage,
    MemoryTokenStorage,
    PKCETokenStorage,
    get_token_storage,
    maybe_await,
    supports_pkce,
)

__all__ = [
    "BaseTokenStorage",
    "DashNexOAuthClient",
    "EncryptedFileTokenStorage",
    "HTTPResponse",
    "KeyringTokenStorage",
    "MemoryTokenStorage",
    "PKCETokenStorage",
    "default_random_source",
    "derive_code_challenge",
    "generate_code_verifier",
    "generate_state",
    "get_token_storage",
    "maybe_await",
    "supports_pkce",
]
