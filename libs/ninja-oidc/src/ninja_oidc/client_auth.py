"""Client authentication for back-channel calls to the token and PAR endpoints."""

from __future__ import annotations

import base64
import time
from urllib.parse import quote_plus

import jwt

from ninja_oidc.config import SdkConfiguration
from ninja_oidc.transient import random_token

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
CLIENT_ASSERTION_LIFETIME = 60


def build_client_assertion(config: SdkConfiguration, *, now: float | None = None) -> str:
    """Sign a ``private_key_jwt`` client assertion (RFC 7523)."""
    issued_at = int(time.time() if now is None else now)
    claims = {
        "iss": config.client_id,
        "sub": config.client_id,
        "aud": config.issuer,
        "iat": issued_at,
        "exp": issued_at + CLIENT_ASSERTION_LIFETIME,
        "jti": random_token(),
    }
    return jwt.encode(
        claims,
        config.client_assertion_signing_key,
        algorithm=config.client_assertion_signing_algorithm,
    )


def apply_client_authentication(
    config: SdkConfiguration,
    data: dict[str, str],
    headers: dict[str, str],
) -> None:
    """Add the configured client credentials to an outgoing form request in place.

    ``client_secret_basic`` encodes the credentials into an ``Authorization``
    header; every other method sends ``client_id`` in the body, with the
    secret or the signed assertion alongside it.
    """
    method = config.client_authentication_method
    if method == "client_secret_basic":
        raw = f"{quote_plus(config.client_id)}:{quote_plus(config.client_secret or '')}"
        headers["Authorization"] = "Basic " + base64.b64encode(raw.encode()).decode("ascii")
        return

    data["client_id"] = config.client_id
    if method == "client_secret_post":
        data["client_secret"] = config.client_secret or ""
    elif method == "private_key_jwt":
        data["client_assertion_type"] = CLIENT_ASSERTION_TYPE
        data["client_assertion"] = build_client_assertion(config)
