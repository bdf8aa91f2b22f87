"""FastAPI router factory for the login, callback, logout and backchannel logout endpoints."""

from __future__ import annotations

import base64
import hmac
import logging
from hashlib import sha256
from urllib.parse import parse_qs

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import RedirectResponse

from ninja_oidc.client import OidcClient
from ninja_oidc.errors import (
    ConfigurationError,
    InvalidGrantError,
    InvalidTokenError,
    MissingCodeError,
    NetworkError,
    OidcError,
    StateMismatchError,
)
from ninja_oidc.log_utils import mask
from ninja_oidc.transient import random_token

logger = logging.getLogger(__name__)


def _sign(session_id: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), msg=session_id.encode(), digestmod=sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def sign_session_id(session_id: str, secret: str) -> str:
    """Return the cookie value ``<session_id>.<signature>``."""
    return f"{session_id}.{_sign(session_id, secret)}"


def unsign_session_id(value: str | None, secret: str) -> str | None:
    """Return the session id from a signed cookie value, or ``None`` if it was tampered with."""
    if not value or "." not in value:
        return None
    session_id, sig = value.rsplit(".", 1)
    if not session_id or not hmac.compare_digest(sig, _sign(session_id, secret)):
        return None
    return session_id


def _status_for(exc: OidcError) -> int:
    if isinstance(exc, MissingCodeError):
        return 400
    if isinstance(exc, StateMismatchError):
        return 403
    if isinstance(exc, (InvalidTokenError, InvalidGrantError)):
        return 401
    if isinstance(exc, NetworkError):
        return 502
    return 400


def create_oidc_router(
    client: OidcClient,
    *,
    prefix: str = "/auth",
    cookie_name: str = "oidc_session",
    cookie_secure: bool = True,
    post_login_redirect: str = "/",
    post_logout_redirect: str | None = None,
) -> APIRouter:
    """Create a FastAPI router that drives the Authorization Code flow for *client*.

    Endpoints (relative to *prefix*):

    - ``GET /login``: starts a login (``?screen_hint=signup`` and
      ``?invitation=&organization=`` are honoured) and redirects to the provider.
    - ``GET|POST /callback``: completes the login (``query`` and
      ``form_post`` response modes) and redirects to *post_login_redirect*.
    - ``GET /logout``: clears the local session and redirects to the
      provider's logout endpoint.
    - ``POST /backchannel-logout``: receives provider logout tokens;
      always answers ``200`` without a body.

    The end user's ``session_id`` travels in an HMAC-signed cookie keyed by
    ``config.cookie_secret``.

    Raises:
        ConfigurationError: ``cookie_secret`` is not configured.
    """
    secret = client.config.cookie_secret
    if not secret:
        raise ConfigurationError("cookie_secret must be configured to mount the OIDC router")

    router = APIRouter(prefix=prefix, tags=["oidc"])

    def _session_id(request: Request) -> str | None:
        return unsign_session_id(request.cookies.get(cookie_name), secret)

    def _set_cookie(response: Response, session_id: str) -> None:
        response.set_cookie(
            cookie_name,
            sign_session_id(session_id, secret),
            httponly=True,
            secure=cookie_secure,
            samesite="lax",
            path="/",
        )

    @router.get("/login")
    async def login(request: Request) -> RedirectResponse:
        session_id = _session_id(request) or random_token()
        query = request.query_params
        invitation = query.get("invitation")
        organization = query.get("organization")
        if invitation and organization:
            url = await client.invitation(session_id, invitation, organization)
        elif query.get("screen_hint") == "signup":
            url = await client.signup(session_id, organization=organization)
        else:
            url = await client.login(session_id, organization=organization)

        logger.info("OIDC login: redirecting session=%s to the provider", mask(session_id))
        response = RedirectResponse(url=url, status_code=302)
        _set_cookie(response, session_id)
        return response

    @router.api_route("/callback", methods=["GET", "POST"])
    async def callback(request: Request) -> RedirectResponse:
        if request.method == "POST":
            params = {k: v[0] for k, v in parse_qs((await request.body()).decode("utf-8", "replace")).items()}
        else:
            params = dict(request.query_params)

        session_id = _session_id(request)
        if session_id is None:
            raise HTTPException(status_code=403, detail="Missing or invalid session cookie")

        if params.get("error"):
            await client.transient(session_id).clear()
            logger.warning(
                "OIDC callback carried provider error=%s",
                params["error"],
                extra={"event": "callback_provider_error", "provider_error": params["error"]},
            )
            raise HTTPException(
                status_code=401,
                detail={"error": params["error"], "message": params.get("error_description", "")},
            )

        try:
            credentials = await client.exchange(session_id, code=params.get("code"), state=params.get("state"))
        except OidcError as exc:
            logger.error(
                "OIDC callback failed: session=%s error=%s",
                mask(session_id),
                exc.code,
                extra={"event": "callback_failed", "reason": exc.code},
            )
            raise HTTPException(status_code=_status_for(exc), detail=exc.to_payload()) from exc

        # The pre-login id may have been planted by someone else; never authenticate it.
        new_session_id = await client.rotate_session(session_id)
        if new_session_id is None:
            raise HTTPException(status_code=409, detail="Session changed during login")

        logger.info(
            "OIDC callback success: session=%s sub=%s",
            mask(new_session_id),
            mask(credentials.user.get("sub")),
        )
        response = RedirectResponse(url=post_login_redirect, status_code=302)
        _set_cookie(response, new_session_id)
        return response

    @router.get("/logout")
    async def logout(request: Request) -> RedirectResponse:
        session_id = _session_id(request)
        if session_id is not None:
            url = await client.logout(session_id, return_to=post_logout_redirect)
        else:
            url = client.authorize.logout_url(post_logout_redirect)
        response = RedirectResponse(url=url, status_code=302)
        response.delete_cookie(cookie_name, path="/")
        return response

    @router.post("/backchannel-logout")
    async def backchannel_logout(request: Request) -> Response:
        if client.backchannel is None:
            logger.warning("Backchannel logout received but no backchannel_logout_cache is configured")
        else:
            await client.backchannel.handle_request(request)
        return Response(status_code=200)

    return router
