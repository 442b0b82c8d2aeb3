"""
Account resources exposed by the DashNex OAuth API (user profile, product licenses, activations).
"""
from pydantic import Field

from .common import ServerPayloadModel


class DashnexLicense(ServerPayloadModel):
    product: str
    activation_limit: int = Field(..., alias="activationLimit")
    activated_count: int = Field(..., alias="activatedCount")

class DashnexUser(ServerPayloadModel):
    id: int
    email: str
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    referral_hash: str | None = Field(default=None, alias="referralHash")
    can_impersonate: bool = Field(default=False, alias="canImpersonate")
    licenses: list[DashnexLicense] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

class Activation(ServerPayloadModel):
    id: int
    domain: str

class ActivationStatus(ServerPayloadModel):
    product: str
    activation_limit: int = Field(..., alias="activationLimit")
    activated_count: int = Field(..., alias="activatedCount")
    activations: list[Activation] = Field(default_factory=list)

    @property
    def remaining(self) -> int:
        return max(self.activation_limit - self.activated_count, 0)

class ActivationResult(ServerPayloadModel):
    id: int
