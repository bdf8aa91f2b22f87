"""Tests for SdkConfiguration validation and derived values."""

import pytest
from cryptography.hazmat.primitives import serialization
from pydantic import ValidationError

from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import ConfigurationError
from ninja_oidc.stores import InMemoryStore


def test_defaults(config: SdkConfiguration):
    assert config.scope == ("openid", "profile", "email")
    assert config.response_mode == "query"
    assert config.response_type == "code"
    assert config.token_algorithm == "RS256"
    assert config.token_leeway == 60
    assert config.client_authentication_method == "client_secret_post"
    assert config.renewal_policy == "eager"
    assert not config.backchannel_logout_enabled


def test_domain_is_normalised(make_config):
    config = make_config(domain="https://Tenant.Example.com/some/path")
    assert config.domain == "tenant.example.com"
    assert config.issuer == "https://tenant.example.com/"


def test_custom_domain_only_affects_browser_urls(make_config):
    config = make_config(custom_domain="login.example.com")
    assert config.browser_base_url == "https://login.example.com"
    assert config.api_base_url == "https://tenant.example.com"
    assert config.issuer == "https://tenant.example.com/"


def test_jwks_uri_default_and_override(make_config):
    assert make_config().jwks_uri() == "https://tenant.example.com/.well-known/jwks.json"
    assert make_config(token_jwks_uri="https://keys.example.com/jwks").jwks_uri() == "https://keys.example.com/jwks"


def test_format_scope_and_defaults(make_config):
    config = make_config(scope=("openid", "offline_access"), audience=("https://api",), organization=("org_1",))
    assert config.format_scope() == "openid offline_access"
    assert config.default_audience() == "https://api"
    assert config.default_organization() == "org_1"
    assert make_config(scope=()).format_scope() is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"domain": ""},
        {"client_id": "  "},
        {"redirect_uri": "ftp://app.example.com/cb"},
        {"redirect_uri": "https:///cb"},
        {"token_algorithm": "none"},
        {"token_algorithm": "HS256", "client_secret": None},
        {"client_authentication_method": "client_secret_basic", "client_secret": None},
        {"client_authentication_method": "private_key_jwt"},
        {"token_leeway": -1},
        {"token_max_age": 0},
        {"http_max_retries": -1},
        {"response_mode": "web_message"},
        {"unknown_setting": True},
        {"backchannel_logout_cache": object()},
    ],
)
def test_invalid_configuration_raises(make_config, overrides):
    with pytest.raises(ConfigurationError):
        make_config(**overrides)


def test_configuration_error_is_value_error(make_config):
    with pytest.raises(ValueError, match="client_id"):
        make_config(client_id="")


def test_missing_required_fields():
    with pytest.raises(ConfigurationError, match="domain"):
        SdkConfiguration(client_id="abc")


def test_public_client_defaults_to_no_client_auth(make_config):
    config = make_config(client_secret=None)
    assert config.client_authentication_method == "none"


def test_par_requires_confidential_client(make_config):
    with pytest.raises(ConfigurationError, match="pushed_authorization_request"):
        make_config(client_secret=None, pushed_authorization_request=True)


def test_signing_key_selects_private_key_jwt(make_config, rsa_private_key):
    pem = rsa_private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    config = make_config(client_secret=None, client_assertion_signing_key=pem)
    assert config.client_authentication_method == "private_key_jwt"
    assert "client_assertion_signing_key" not in repr(config)


def test_private_key_jwt_rejects_hmac_algorithm(make_config):
    with pytest.raises(ConfigurationError, match="client assertion"):
        make_config(client_assertion_signing_key="pem", client_assertion_signing_algorithm="HS256")


def test_backchannel_cache_enables_backchannel(make_config):
    assert make_config(backchannel_logout_cache=InMemoryStore()).backchannel_logout_enabled


def test_configuration_is_frozen(config: SdkConfiguration):
    with pytest.raises(ValidationError):
        config.client_id = "other"
