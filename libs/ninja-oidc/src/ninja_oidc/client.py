"""High-level client wiring every component around one configuration."""

from __future__ import annotations

import logging
import time
from typing import Any

from starlette.requests import Request

from ninja_oidc.authorize import AuthorizationRequestBuilder, PushedAuthorizationRequest
from ninja_oidc.backchannel import BackchannelLogoutHandler
from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import ConfigurationError, InvalidTokenError, TokenCheck
from ninja_oidc.exchange import TokenExchanger
from ninja_oidc.http import HttpClient, HttpxClient
from ninja_oidc.jwks import JwksFetcher
from ninja_oidc.session import Credentials, SessionManager, SessionState
from ninja_oidc.stores import Cache, InMemoryStore, Store
from ninja_oidc.transient import TransientStateHandler, random_token
from ninja_oidc.verifier import SignatureVerifierRegistry, TokenVerifier

logger = logging.getLogger(__name__)


def parse_bearer_token(value: str | None) -> str | None:
    """Return the token from ``Bearer <token>`` (or a bare token), ``None`` when empty."""
    if not value:
        return None
    value = value.strip()
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    return value or None


class OidcClient:
    """Authorization Code + PKCE client for one application.

    Every per-user operation takes a ``session_id``: the opaque key under
    which that end user's pending login and session are stored (the web
    layer usually keeps it in a signed cookie).

    Args:
        config: A validated configuration. Alternatively pass the settings as
            keyword arguments and one is built (raising
            :class:`~ninja_oidc.errors.ConfigurationError` when invalid).
        http: HTTP capability; defaults to :class:`~ninja_oidc.http.HttpxClient`
            built from the ``http_*`` settings.
        session_store: Storage for sessions; defaults to an in-memory store.
        transient_store: Storage for pending logins; defaults to *session_store*.
        cache: Cache for JWKS documents; defaults to an in-memory store.

    Example::

        client = OidcClient(domain="tenant.eu.auth0.com", client_id="...", client_secret="...",
                            redirect_uri="https://app.example.com/callback")
        url = await client.login(session_id)
        ...
        credentials = await client.exchange(session_id, code=code, state=state)
    """

    def __init__(
        self,
        config: SdkConfiguration | None = None,
        *,
        http: HttpClient | None = None,
        session_store: Store | None = None,
        transient_store: Store | None = None,
        cache: Cache | None = None,
        **settings: Any,
    ) -> None:
        if config is None:
            config = SdkConfiguration(**settings)
        elif settings:
            raise ConfigurationError("Pass either a configuration object or keyword settings, not both")
        self.config = config

        self.http: HttpClient = http or HttpxClient(
            timeout=config.http_timeout,
            max_retries=config.http_max_retries,
            backoff_factor=config.http_backoff_factor,
        )
        self.session_store: Store = session_store or InMemoryStore()
        self.transient_store: Store = transient_store or self.session_store

        self.jwks = JwksFetcher(config.jwks_uri(), self.http, cache=cache, ttl=config.token_cache_ttl)
        self.verifier = TokenVerifier(config, SignatureVerifierRegistry.for_configuration(config, self.jwks))
        self.authorize = AuthorizationRequestBuilder(config, par=PushedAuthorizationRequest(config, self.http))
        self.exchanger = TokenExchanger(config, self.http)
        self.backchannel = (
            BackchannelLogoutHandler(config, self.verifier) if config.backchannel_logout_enabled else None
        )
        self.sessions = SessionManager(
            self.session_store,
            self.exchanger,
            self.verifier,
            backchannel=self.backchannel,
            renewal_policy=config.renewal_policy,
            default_scope=config.scope,
            default_lifetime=config.access_token_default_lifetime,
        )

    async def __aenter__(self) -> OidcClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if isinstance(self.http, HttpxClient):
            await self.http.aclose()

    def transient(self, session_id: str) -> TransientStateHandler:
        return TransientStateHandler(self.transient_store, session_id, ttl=self.config.transient_ttl)

    # -- login ---------------------------------------------------------------

    async def login(self, session_id: str, **kwargs: Any) -> str:
        """Start a login and return the URL to redirect the browser to.

        Keyword arguments are those of
        :meth:`~ninja_oidc.authorize.AuthorizationRequestBuilder.login_url`.
        """
        return await self.authorize.login_url(self.transient(session_id), **kwargs)

    async def signup(self, session_id: str, **kwargs: Any) -> str:
        return await self.authorize.signup_url(self.transient(session_id), **kwargs)

    async def invitation(self, session_id: str, invitation: str, organization: str, **kwargs: Any) -> str:
        return await self.authorize.invitation_url(self.transient(session_id), invitation, organization, **kwargs)

    async def exchange(
        self,
        session_id: str,
        *,
        code: str | None,
        state: str | None,
        redirect_uri: str | None = None,
    ) -> Credentials:
        """Complete the callback: redeem the code, verify the ID token, establish the session.

        Raises:
            StateMismatchError: The callback does not belong to the pending login.
            InvalidGrantError: The provider rejected the code.
            InvalidTokenError: The ID token is missing or failed verification.
            NetworkError: The provider could not be reached.
        """
        tokens = await self.exchanger.exchange(
            self.transient(session_id), code=code, state=state, redirect_uri=redirect_uri
        )
        if not tokens.id_token:
            raise InvalidTokenError(TokenCheck.FORMAT, "The token endpoint response did not include an ID token")
        claims = await self.verifier.verify_id_token(
            tokens.id_token,
            nonce=tokens.nonce,
            max_age=tokens.max_age,
            organization=self.config.organization or None,
        )
        now = time.time()
        session = await self.sessions.establish(session_id, tokens, claims, now=now)
        return Credentials.from_session(session, now)

    # -- session ---------------------------------------------------------------

    async def get_credentials(self, session_id: str) -> Credentials | None:
        return await self.sessions.get_credentials(session_id)

    async def state(self, session_id: str) -> SessionState:
        return await self.sessions.state(session_id)

    async def is_authenticated(self, session_id: str) -> bool:
        return await self.get_credentials(session_id) is not None

    async def renew(self, session_id: str, params: dict[str, Any] | None = None) -> Credentials:
        return await self.sessions.renew(session_id, params)

    async def rotate_session(self, session_id: str) -> str | None:
        """Move the session to a freshly generated id and return it.

        Returns ``None`` when *session_id* has no session. Web layers call this
        right after :meth:`exchange` so an id planted before login cannot be
        used to ride the authenticated session.
        """
        new_session_id = random_token()
        if not await self.sessions.rotate(session_id, new_session_id):
            return None
        return new_session_id

    async def logout(self, session_id: str, return_to: str | None = None, params: dict[str, Any] | None = None) -> str:
        """Destroy the local session and return the provider logout URL."""
        await self.sessions.clear(session_id)
        await self.transient(session_id).clear()
        return self.authorize.logout_url(return_to, params=params)

    # -- bearer tokens ---------------------------------------------------------

    async def get_bearer_token(
        self,
        request: Request,
        *,
        query_params: tuple[str, ...] = (),
        audience: tuple[str, ...] | None = None,
    ) -> dict[str, Any] | None:
        """Verify the access token a request presents and return its claims.

        The ``Authorization`` header is tried first, then each of
        *query_params* in order. Returns ``None`` when no candidate verifies,
        so an API can treat the request as anonymous.
        """
        candidates = [request.headers.get("authorization")]
        candidates.extend(request.query_params.get(name) for name in query_params)
        for candidate in candidates:
            token = parse_bearer_token(candidate)
            if token is None:
                continue
            try:
                return await self.verifier.verify_access_token(
                    token, audience=audience, organization=self.config.organization or None
                )
            except InvalidTokenError:
                continue
        return None

    # -- backchannel -----------------------------------------------------------

    async def handle_backchannel_logout(self, logout_token: str) -> bool:
        """Verify a logout token and revoke the sessions it names.

        Raises:
            ConfigurationError: No ``backchannel_logout_cache`` is configured.
            InvalidTokenError: The token failed verification.
        """
        if self.backchannel is None:
            raise ConfigurationError("Backchannel logout requires a backchannel_logout_cache")
        return await self.backchannel.handle_logout_token(logout_token)
