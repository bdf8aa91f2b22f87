"""Tests for the FastAPI OIDC router factory."""

from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from ninja_oidc.client import OidcClient
from ninja_oidc.errors import ConfigurationError
from ninja_oidc.router import create_oidc_router, sign_session_id, unsign_session_id
from ninja_oidc.stores import InMemoryStore

TOKEN_PATH = "/oauth/token"
COOKIE = "oidc_session"


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def _cookie_value(resp) -> str:
    header = next(v for k, v in resp.headers.multi_items() if k == "set-cookie" and v.startswith(f"{COOKIE}="))
    return header.split(";")[0].split("=", 1)[1]


@pytest.fixture
def oidc(make_config, http) -> OidcClient:
    return OidcClient(make_config(backchannel_logout_cache=InMemoryStore()), http=http)


@pytest.fixture
def app(oidc: OidcClient) -> FastAPI:
    app = FastAPI()
    app.include_router(create_oidc_router(oidc, cookie_secure=False, post_login_redirect="/home"))
    return app


@pytest.fixture
async def web(app: FastAPI):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test", follow_redirects=False) as client:
        yield client


async def _start_login(web: AsyncClient, provider, signer) -> tuple[str, dict[str, str]]:
    resp = await web.get("/auth/login")
    assert resp.status_code == 302
    query = _query(resp.headers["location"])
    provider.respond(
        TOKEN_PATH,
        200,
        {"access_token": "at-1", "id_token": signer.id_token(nonce=query["nonce"]), "expires_in": 3600},
    )
    return _cookie_value(resp), query


async def _complete_login(web: AsyncClient, provider, signer) -> str:
    cookie, query = await _start_login(web, provider, signer)
    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": query["state"]},
        headers={"cookie": f"{COOKIE}={cookie}"},
    )
    assert resp.status_code == 302
    return _cookie_value(resp)


def test_sign_and_unsign_session_id():
    signed = sign_session_id("abc", "secret")
    assert unsign_session_id(signed, "secret") == "abc"
    assert unsign_session_id(signed, "other-secret") is None
    assert unsign_session_id("abc.forged", "secret") is None
    assert unsign_session_id("no-signature", "secret") is None
    assert unsign_session_id(None, "secret") is None


async def test_router_requires_cookie_secret(make_config, http):
    with pytest.raises(ConfigurationError, match="cookie_secret"):
        create_oidc_router(OidcClient(make_config(cookie_secret=None), http=http))


async def test_login_redirects_and_sets_signed_cookie(web: AsyncClient, config):
    resp = await web.get("/auth/login")

    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://tenant.example.com/authorize?")
    assert unsign_session_id(_cookie_value(resp), config.cookie_secret)
    set_cookie = resp.headers["set-cookie"].lower()
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie


async def test_login_signup_and_invitation_variants(web: AsyncClient):
    signup = await web.get("/auth/login", params={"screen_hint": "signup"})
    assert _query(signup.headers["location"])["screen_hint"] == "signup"

    invite = await web.get("/auth/login", params={"invitation": "inv_1", "organization": "org_1"})
    query = _query(invite.headers["location"])
    assert query["invitation"] == "inv_1"
    assert query["organization"] == "org_1"


async def test_callback_establishes_session(web: AsyncClient, oidc: OidcClient, provider, signer, config):
    cookie, query = await _start_login(web, provider, signer)

    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": query["state"]},
        headers={"cookie": f"{COOKIE}={cookie}"},
    )

    assert resp.status_code == 302
    assert resp.headers["location"] == "/home"
    session_id = unsign_session_id(_cookie_value(resp), config.cookie_secret)
    assert session_id != unsign_session_id(cookie, config.cookie_secret)
    assert (await oidc.get_credentials(session_id)).user["sub"] == "auth0|user-1"


async def test_callback_does_not_authenticate_planted_session_id(
    web: AsyncClient, oidc: OidcClient, provider, signer, config
):
    planted, query = await _start_login(web, provider, signer)

    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": query["state"]},
        headers={"cookie": f"{COOKIE}={planted}"},
    )

    assert resp.status_code == 302
    assert await oidc.get_credentials(unsign_session_id(planted, config.cookie_secret)) is None
    assert await oidc.get_credentials(unsign_session_id(_cookie_value(resp), config.cookie_secret)) is not None


async def test_form_post_callback(web: AsyncClient, provider, signer):
    cookie, query = await _start_login(web, provider, signer)

    resp = await web.post(
        "/auth/callback",
        content=urlencode({"code": "code-1", "state": query["state"]}),
        headers={"cookie": f"{COOKIE}={cookie}", "content-type": "application/x-www-form-urlencoded"},
    )

    assert resp.status_code == 302


async def test_callback_without_cookie_is_forbidden(web: AsyncClient, provider, signer):
    _, query = await _start_login(web, provider, signer)
    resp = await web.get("/auth/callback", params={"code": "code-1", "state": query["state"]}, headers={"cookie": ""})
    assert resp.status_code == 403
    assert provider.calls(TOKEN_PATH) == []


async def test_callback_with_tampered_cookie_is_forbidden(web: AsyncClient, provider, signer):
    cookie, query = await _start_login(web, provider, signer)
    session_id = cookie.rsplit(".", 1)[0]
    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": query["state"]},
        headers={"cookie": f"{COOKIE}={session_id}.forged"},
    )
    assert resp.status_code == 403


async def test_callback_state_mismatch(web: AsyncClient, provider, signer):
    cookie, _ = await _start_login(web, provider, signer)
    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": "forged"},
        headers={"cookie": f"{COOKIE}={cookie}"},
    )
    assert resp.status_code == 403
    assert resp.json()["detail"]["error"] == "invalid_state"
    assert provider.calls(TOKEN_PATH) == []


async def test_callback_missing_code(web: AsyncClient, provider, signer):
    cookie, query = await _start_login(web, provider, signer)
    resp = await web.get("/auth/callback", params={"state": query["state"]}, headers={"cookie": f"{COOKIE}={cookie}"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "missing_code"


async def test_callback_rejected_code(web: AsyncClient, provider, signer):
    cookie, query = await _start_login(web, provider, signer)
    provider.respond(TOKEN_PATH, 403, {"error": "invalid_grant"})
    resp = await web.get(
        "/auth/callback",
        params={"code": "code-1", "state": query["state"]},
        headers={"cookie": f"{COOKIE}={cookie}"},
    )
    assert resp.status_code == 401
    assert resp.json()["detail"]["provider_error"] == "invalid_grant"


async def test_callback_provider_error(web: AsyncClient, provider, signer):
    cookie, _ = await _start_login(web, provider, signer)
    resp = await web.get(
        "/auth/callback",
        params={"error": "access_denied", "error_description": "User cancelled"},
        headers={"cookie": f"{COOKIE}={cookie}"},
    )
    assert resp.status_code == 401
    assert resp.json()["detail"]["error"] == "access_denied"


async def test_logout_clears_session(web: AsyncClient, oidc: OidcClient, provider, signer, config):
    cookie = await _complete_login(web, provider, signer)

    resp = await web.get("/auth/logout", headers={"cookie": f"{COOKIE}={cookie}"})

    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://tenant.example.com/v2/logout?")
    assert f"{COOKIE}=" in resp.headers["set-cookie"]
    assert await oidc.get_credentials(unsign_session_id(cookie, config.cookie_secret)) is None


async def test_logout_without_session(web: AsyncClient):
    resp = await web.get("/auth/logout", headers={"cookie": ""})
    assert resp.status_code == 302
    assert "/v2/logout?" in resp.headers["location"]


async def test_backchannel_logout_endpoint(web: AsyncClient, oidc: OidcClient, provider, signer, config):
    cookie = await _complete_login(web, provider, signer)

    resp = await web.post(
        "/auth/backchannel-logout",
        content=urlencode({"logout_token": signer.logout_token()}),
        headers={"content-type": "application/x-www-form-urlencoded"},
    )

    assert resp.status_code == 200
    assert resp.content == b""
    assert await oidc.get_credentials(unsign_session_id(cookie, config.cookie_secret)) is None


@pytest.mark.parametrize(
    ("content", "content_type"),
    [
        ("logout_token=garbage", "application/x-www-form-urlencoded"),
        ('{"logout_token": "x"}', "application/json"),
        ("", "application/x-www-form-urlencoded"),
    ],
)
async def test_backchannel_logout_ignores_bad_requests(web: AsyncClient, content, content_type):
    resp = await web.post("/auth/backchannel-logout", content=content, headers={"content-type": content_type})
    assert resp.status_code == 200
    assert resp.content == b""


async def test_backchannel_logout_without_cache(make_config, http):
    app = FastAPI()
    app.include_router(create_oidc_router(OidcClient(make_config(), http=http), cookie_secure=False))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/auth/backchannel-logout", content="logout_token=x")
    assert resp.status_code == 200
