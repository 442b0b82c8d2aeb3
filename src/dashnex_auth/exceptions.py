"""
Custom exceptions for the DashNex auth client.
"""
from typing import Any, Optional


class DashNexAuthError(Exception):
    """Base class for all DashNex auth client errors."""
    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        status_text: Optional[str] = None,
        server_error: Optional[Any] = None,
        requires_reauth: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.status_text = status_text
        self.server_error = server_error
        self.requires_reauth = requires_reauth

class ConfigurationError(DashNexAuthError):
    """Raised when the client cannot run the requested flow with its configuration,
    e.g. a public client bound to a store that cannot persist a PKCE verifier."""
    pass

class NotAuthenticatedError(DashNexAuthError):
    """Raised when a protected call is attempted without an access token."""
    def __init__(self, message: str = "Not authenticated."):
        super().__init__(message, requires_reauth=True)

class TokenExchangeError(DashNexAuthError):
    """Raised when the token endpoint rejects an authorization code exchange."""
    pass

class StateMismatchError(DashNexAuthError):
    """Raised when the state echoed by the server differs from the persisted one. Possible CSRF."""
    def __init__(self, message: str = "OAuth state mismatch. Possible CSRF attack."):
        super().__init__(message)

class RefreshFailedError(DashNexAuthError):
    """Raised when the access token cannot be refreshed."""
    pass

class RequestFailedError(DashNexAuthError):
    """Raised when an authenticated API call fails, including a 401 after the refresh retry."""
    pass

class TokenStorageError(DashNexAuthError):
    """Base class for token storage errors."""
    pass

class EncryptionError(TokenStorageError):
    """Raised for issues related to encryption/decryption."""
    pass
