"""Validated, immutable client configuration."""

from __future__ import annotations

import logging
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ninja_oidc.errors import ConfigurationError
from ninja_oidc.stores import Cache

logger = logging.getLogger(__name__)

HMAC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
)

ClientAuthMethod = Literal["client_secret_post", "client_secret_basic", "private_key_jwt", "none"]


def _describe(exc: ValidationError) -> str:
    """Flatten a pydantic error into a single readable line."""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "configuration"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "Invalid SDK configuration: " + "; ".join(parts)


class SdkConfiguration(BaseModel):
    """Settings shared by every component of the client.

    Constructed once per application and treated as read-only; any invalid
    value or combination raises :class:`~ninja_oidc.errors.ConfigurationError`
    immediately rather than at first use.

    Attributes:
        domain: Identity provider tenant host, e.g. ``tenant.eu.auth0.com``.
            A full URL is accepted and reduced to its host.
        custom_domain: Optional vanity host used for browser-facing URLs
            (``/authorize``, ``/v2/logout``).
        client_secret: Required for confidential clients and for ``HS*``
            signed ID tokens.
        cookie_secret: Secret used by the web layer to sign the session cookie.
        backchannel_logout_cache: A :class:`~ninja_oidc.stores.Cache` holding
            logout markers and seen ``jti`` values. Without it, backchannel
            logout is disabled.
        renewal_policy: ``"eager"`` renews expired sessions while reading
            credentials; ``"on_demand"`` leaves renewal to the caller.
    """

    model_config = {"arbitrary_types_allowed": True, "frozen": True, "extra": "forbid"}

    domain: str
    custom_domain: str | None = None
    client_id: str
    client_secret: str | None = None
    cookie_secret: str | None = None
    redirect_uri: str | None = None
    scope: tuple[str, ...] = ("openid", "profile", "email")
    audience: tuple[str, ...] = ()
    organization: tuple[str, ...] = ()
    response_mode: Literal["query", "form_post", "fragment"] = "query"
    response_type: str = "code"
    pushed_authorization_request: bool = False
    backchannel_logout_cache: Any | None = Field(default=None, exclude=True)

    token_algorithm: str = "RS256"
    token_jwks_uri: str | None = None
    token_max_age: int | None = Field(default=None, gt=0)
    token_leeway: int = Field(default=60, ge=0)
    token_cache_ttl: int = Field(default=600, ge=0)
    access_token_default_lifetime: int = Field(default=3600, gt=0)

    client_authentication_method: ClientAuthMethod = "client_secret_post"
    client_assertion_signing_key: str | None = Field(default=None, repr=False)
    client_assertion_signing_algorithm: str = "RS256"

    http_timeout: float = Field(default=10.0, gt=0)
    http_max_retries: int = Field(default=2, ge=0)
    http_backoff_factor: float = Field(default=0.5, ge=0)

    renewal_policy: Literal["eager", "on_demand"] = "eager"
    transient_ttl: int = Field(default=600, gt=0)
    query_user_info: bool = False

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise ConfigurationError(_describe(exc)) from exc

    @model_validator(mode="before")
    @classmethod
    def _default_client_auth(cls, data: Any) -> Any:
        # Public clients (no secret, no signing key) default to no client authentication.
        if isinstance(data, dict) and "client_authentication_method" not in data:
            data = dict(data)
            if data.get("client_assertion_signing_key"):
                data["client_authentication_method"] = "private_key_jwt"
            elif not data.get("client_secret"):
                data["client_authentication_method"] = "none"
        return data

    @field_validator("domain", "custom_domain")
    @classmethod
    def _normalize_host(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        host = urlparse(value).hostname if "://" in value else value.strip("/").split("/")[0]
        if not host:
            raise ValueError("Missing or invalid domain configuration")
        return host.lower()

    @field_validator("client_id")
    @classmethod
    def _check_client_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Missing or invalid client_id configuration")
        return value

    @field_validator("redirect_uri")
    @classmethod
    def _check_redirect_uri(cls, value: str | None) -> str | None:
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"redirect_uri must be an HTTP(S) URL, got: '{value}'")
        if not parsed.hostname:
            raise ValueError(f"redirect_uri must include a hostname, got: '{value}'")
        return value

    @model_validator(mode="after")
    def _check_combinations(self) -> SdkConfiguration:
        if self.token_algorithm not in HMAC_ALGORITHMS | ASYMMETRIC_ALGORITHMS:
            raise ValueError(f"Unsupported token algorithm '{self.token_algorithm}'")
        if self.token_algorithm in HMAC_ALGORITHMS and not self.client_secret:
            raise ValueError(f"client_secret is required to verify tokens signed with '{self.token_algorithm}'")
        method = self.client_authentication_method
        if method in ("client_secret_post", "client_secret_basic") and not self.client_secret:
            raise ValueError(f"client_secret is required for client authentication method '{method}'")
        if method == "private_key_jwt":
            if not self.client_assertion_signing_key:
                raise ValueError("client_assertion_signing_key is required for 'private_key_jwt'")
            if self.client_assertion_signing_algorithm not in ASYMMETRIC_ALGORITHMS:
                raise ValueError(
                    f"Unsupported client assertion algorithm '{self.client_assertion_signing_algorithm}'"
                )
        if self.pushed_authorization_request and method == "none":
            raise ValueError("pushed_authorization_request requires a confidential client authentication method")
        if self.backchannel_logout_cache is not None and not isinstance(self.backchannel_logout_cache, Cache):
            raise ValueError("backchannel_logout_cache must implement the Cache protocol")
        if not self.cookie_secret:
            logger.debug("SdkConfiguration has no cookie_secret; the web router cannot sign session cookies.")
        return self

    @property
    def issuer(self) -> str:
        """Expected ``iss`` claim of tokens minted by the provider."""
        return f"https://{self.domain}/"

    @property
    def api_base_url(self) -> str:
        """Base URL for back-channel calls (token, PAR, JWKS, userinfo)."""
        return f"https://{self.domain}"

    @property
    def browser_base_url(self) -> str:
        """Base URL for browser redirects; the custom domain wins when set."""
        return f"https://{self.custom_domain or self.domain}"

    def jwks_uri(self) -> str:
        return self.token_jwks_uri or f"{self.api_base_url}/.well-known/jwks.json"

    def format_scope(self) -> str | None:
        return " ".join(self.scope) if self.scope else None

    def default_audience(self) -> str | None:
        return self.audience[0] if self.audience else None

    def default_organization(self) -> str | None:
        return self.organization[0] if self.organization else None

    @property
    def backchannel_logout_enabled(self) -> bool:
        return self.backchannel_logout_cache is not None
