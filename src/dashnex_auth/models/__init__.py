"""
Pydantic models for DashNex Auth.
"""
from .account import (
    Activation,
    ActivationResult,
    ActivationStatus,
    DashnexLicense,
    DashnexUser,
)
from .auth import (
    DEFAULT_BASE_URL,
    ClientConfig,
    OAuthError,
    TokenRequest,
    TokenResponse,
)
from .common import BasePydanticModel, ServerPayloadModel

__all__ = [
    "DEFAULT_BASE_URL",
    "Activation",
    "ActivationResult",
    "ActivationStatus",
    "BasePydanticModel",
    "ClientConfig",
    "DashnexLicense",
    "DashnexUser",
    "OAuthError",
    "ServerPayloadModel",
    "TokenRequest",
    "TokenResponse",
]
