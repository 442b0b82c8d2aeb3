"""Tests for pydantic models."""

import pytest
from pydantic import ValidationError

from dashnex_auth.models.account import ActivationStatus, DashnexUser
from dashnex_auth.models.auth import DEFAULT_BASE_URL, ClientConfig, TokenResponse


def test_client_config_defaults_and_endpoints():
    config = ClientConfig(client_id="cid", redirect_uri="http://localhost:3000/callback")

    assert config.base_url == DEFAULT_BASE_URL
    assert config.client_secret is None
    assert config.is_confidential is False
    assert config.authorization_endpoint == "https://dashnex.com/oauth/v2/auth"
    assert config.token_endpoint == "https://dashnex.com/oauth/v2/token"

def test_client_config_normalizes_values():
    config = ClientConfig(client_id="cid", client_secret="", redirect_uri="myapp://cb", base_url="https://x.test/")

    assert config.client_secret is None
    assert config.redirect_uri == "myapp://cb"
    assert config.base_url == "https://x.test"

def test_client_config_is_immutable():
    config = ClientConfig(client_id="cid", redirect_uri="http://localhost/cb")
    with pytest.raises(ValidationError):
        config.client_id = "other"

def test_client_config_requires_client_id():
    with pytest.raises(ValidationError):
        ClientConfig(client_id="", redirect_uri="http://localhost/cb")

def test_token_response_ignores_unknown_fields():
    token = TokenResponse.model_validate({"access_token": "acc", "id_token": "x", "expires_in": 3600})
    assert token.access_token == "acc"
    assert token.refresh_token is None
    assert token.state is None

def test_user_model_uses_camel_case_aliases():
    user = DashnexUser.model_validate({
        "id": 1,
        "email": "a@b.c",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "referralHash": "r",
        "canImpersonate": True,
        "licenses": [],
    })
    assert user.full_name == "Ada Lovelace"
    assert user.can_impersonate is True

def test_activation_status_remaining_never_negative():
    status = ActivationStatus.model_validate({"product": "p", "activationLimit": 1, "activatedCount": 3})
    assert status.remaining == 0
    assert status.activations == []
