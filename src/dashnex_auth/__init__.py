"""DashNex Auth - OAuth 2.0 Authorization Code client with PKCE for the DashNex API.

Builds authorization URLs, exchanges codes for tokens, keeps them in a pluggable
token store and refreshes them transparently on authenticated calls.
"""

__version__ = "0.1.0"

from .auth.oauth_client import DashNexOAuthClient
from .auth.token_storage import BaseTokenStorage, MemoryTokenStorage, PKCETokenStorage
from .config import Config
from .exceptions import (
    ConfigurationError,
    DashNexAuthError,
    NotAuthenticatedError,
    RefreshFailedError,
    RequestFailedError,
    StateMismatchError,
    TokenExchangeError,
)
from .models.auth import ClientConfig

__all__ = [
    "BaseTokenStorage",
    "ClientConfig",
    "Config",
    "ConfigurationError",
    "DashNexAuthError",
    "DashNexOAuthClient",
    "MemoryTokenStorage",
    "NotAuthenticatedError",
    "PKCETokenStorage",
    "RefreshFailedError",
    "RequestFailedError",
    "StateMismatchError",
    "TokenExchangeError",
]
