"""Shared fixtures for ninja-oidc tests: signing keys and a mock identity provider."""

import json
import time
from typing import Any
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from ninja_oidc.config import SdkConfiguration
from ninja_oidc.http import HttpxClient
from ninja_oidc.verifier import BACKCHANNEL_LOGOUT_EVENT

DOMAIN = "tenant.example.com"
ISSUER = f"https://{DOMAIN}/"
CLIENT_ID = "client-abc123"
CLIENT_SECRET = "client-secret-value-long-enough-for-hs256-signing"
REDIRECT_URI = "https://app.example.com/callback"
COOKIE_SECRET = "cookie-secret-for-tests"
KID = "test-key-1"


class TokenSigner:
    """Mints ID and logout tokens with a test RSA key (or the client secret for HS*)."""

    def __init__(self, private_key: rsa.RSAPrivateKey, kid: str = KID) -> None:
        self.private_key = private_key
        self.kid = kid

    @property
    def jwks(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": self.kid, "use": "sig", "alg": "RS256"})
        return {"keys": [jwk]}

    @staticmethod
    def claims(**overrides: Any) -> dict[str, Any]:
        """Valid ID token claims; an override of ``None`` removes the claim."""
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": ISSUER,
            "sub": "auth0|user-1",
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 3600,
            "sid": "sid-1",
        }
        claims.update(overrides)
        return {k: v for k, v in claims.items() if v is not None}

    @classmethod
    def logout_claims(cls, **overrides: Any) -> dict[str, Any]:
        defaults: dict[str, Any] = {
            "events": {BACKCHANNEL_LOGOUT_EVENT: {}},
            "jti": f"jti-{time.monotonic_ns()}",
        }
        defaults.update(overrides)
        return cls.claims(**defaults)

    def sign(self, claims: dict[str, Any], *, alg: str = "RS256", kid: str | None = KID, key: Any = None) -> str:
        if key is None:
            key = CLIENT_SECRET if alg.startswith("HS") else self.private_key
        headers = {"kid": kid} if kid else None
        return jwt.encode(claims, key, algorithm=alg, headers=headers)

    def id_token(self, **overrides: Any) -> str:
        return self.sign(self.claims(**overrides))

    def logout_token(self, **overrides: Any) -> str:
        return self.sign(self.logout_claims(**overrides))


class MockProvider:
    """Routes requests made through ``httpx.MockTransport`` to canned provider answers.

    Responses are stored as ``(status, body)`` pairs and rebuilt for every
    request; a queued list of pairs for a path is consumed in order.
    """

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Any] = {
            "/.well-known/jwks.json": (200, jwks),
            "/oauth/token": (200, {"access_token": "at-1", "token_type": "Bearer", "expires_in": 3600}),
            "/oauth/par": (201, {"request_uri": "urn:ietf:params:oauth:request_uri:abc", "expires_in": 90}),
            "/userinfo": (200, {"sub": "auth0|user-1", "email": "user@example.com"}),
        }

    def respond(self, path: str, status: int, body: Any = None) -> None:
        self.routes[path] = (status, body)

    def queue(self, path: str, *responses: tuple[int, Any]) -> None:
        self.routes[path] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        status, body = route
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def signer(rsa_private_key) -> TokenSigner:
    return TokenSigner(rsa_private_key)


@pytest.fixture
def provider(signer: TokenSigner) -> MockProvider:
    return MockProvider(signer.jwks)


@pytest.fixture
async def http(provider: MockProvider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    yield HttpxClient(client, max_retries=2, backoff_factor=0)
    await client.aclose()


@pytest.fixture
def make_config():
    def _make(**overrides: Any) -> SdkConfiguration:
        settings: dict[str, Any] = {
            "domain": DOMAIN,
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
            "redirect_uri": REDIRECT_URI,
            "cookie_secret": COOKIE_SECRET,
        }
        settings.update(overrides)
        return SdkConfiguration(**{k: v for k, v in settings.items() if v is not None})

    return _make


@pytest.fixture
def config(make_config) -> SdkConfiguration:
    return make_config()
