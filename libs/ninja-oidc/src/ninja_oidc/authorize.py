"""Authorization, signup, invitation and logout URL construction, plus PAR submission."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from ninja_oidc.client_auth import apply_client_authentication
from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import ConfigurationError, NetworkError, ParResponseError
from ninja_oidc.http import HttpClient
from ninja_oidc.pkce import generate_code_challenge, generate_code_verifier
from ninja_oidc.transient import CODE_VERIFIER, MAX_AGE, NONCE, REDIRECT_URI, STATE, TransientStateHandler

logger = logging.getLogger(__name__)

# Parameters derived from the stored PKCE verifier; callers cannot replace them.
_PKCE_PARAMS = frozenset({"code_challenge", "code_challenge_method"})
_SECRET_FORM_FIELDS = frozenset({"client_secret", "client_assertion"})


def _compact(params: dict[str, Any]) -> dict[str, str]:
    return {k: str(v) for k, v in params.items() if v is not None and v != ""}


class PushedAuthorizationRequest:
    """Submits authorization parameters to ``/oauth/par`` (RFC 9126)."""

    def __init__(self, config: SdkConfiguration, http: HttpClient) -> None:
        self.config = config
        self.http = http

    def defaults(self) -> dict[str, str]:
        return _compact(
            {
                "audience": self.config.default_audience(),
                "organization": self.config.default_organization(),
                "response_mode": self.config.response_mode,
                "response_type": self.config.response_type,
                "redirect_uri": self.config.redirect_uri,
                "scope": self.config.format_scope(),
            }
        )

    async def push(self, params: dict[str, Any] | None = None) -> str:
        """Push *params* and return the browser URL that redeems the ``request_uri``.

        Configured defaults are merged first and caller values win.

        Raises:
            NetworkError: The endpoint did not answer ``201 Created``.
            ParResponseError: The body lacks a string ``request_uri`` or an
                integer ``expires_in``.
        """
        data = {**self.defaults(), **_compact(params or {})}
        client_id = str(data.get("client_id") or self.config.client_id)
        headers: dict[str, str] = {}
        apply_client_authentication(self.config, data, headers)

        resp = await self.http.request("POST", f"{self.config.api_base_url}/oauth/par", headers=headers, data=data)
        if resp.status_code != 201:
            raise NetworkError(
                f"The Pushed Authorization Request endpoint returned status {resp.status_code}, expected 201",
                status_code=resp.status_code,
            )

        body = resp.json()
        request_uri = body.get("request_uri") if isinstance(body, dict) else None
        expires_in = body.get("expires_in") if isinstance(body, dict) else None
        if not isinstance(request_uri, str) or not isinstance(expires_in, int) or isinstance(expires_in, bool):
            raise ParResponseError(
                request={k: v for k, v in data.items() if k not in _SECRET_FORM_FIELDS},
                response=resp,
            )

        logger.info(
            "Pushed authorization request accepted, expires in %ds",
            expires_in,
            extra={"event": "par_pushed", "expires_in": expires_in},
        )
        query = urlencode({"client_id": client_id, "request_uri": request_uri})
        return f"{self.config.browser_base_url}/authorize?{query}"


class AuthorizationRequestBuilder:
    """Builds the browser redirects that start and end an authentication.

    Each login call issues a fresh ``state``, ``nonce`` and PKCE verifier and
    stores them in the caller's :class:`~ninja_oidc.transient.TransientStateHandler`
    so the callback can be bound to exactly this attempt.
    """

    def __init__(self, config: SdkConfiguration, *, par: PushedAuthorizationRequest | None = None) -> None:
        self.config = config
        self.par = par
        if config.pushed_authorization_request and par is None:
            raise ConfigurationError("pushed_authorization_request is enabled but no PAR client was supplied")

    async def login_url(
        self,
        transient: TransientStateHandler,
        *,
        audience: str | None = None,
        organization: str | None = None,
        scope: str | None = None,
        redirect_uri: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Return the ``/authorize`` URL for a new login attempt.

        Args:
            transient: The end user's transient store; previous values are replaced.
            audience: API audience; defaults to the first configured audience.
            organization: Organization id or name; defaults to the first configured one.
            scope: Space-separated scopes; defaults to the configured scope.
            redirect_uri: Callback URL; defaults to ``config.redirect_uri``.
            params: Extra authorization parameters. They override configured
                defaults; a caller-supplied ``state`` or ``nonce`` is stored as-is.

        Raises:
            ConfigurationError: No redirect URI is available.
        """
        extra = dict(params or {})
        redirect_uri = redirect_uri or extra.pop("redirect_uri", None) or self.config.redirect_uri
        if not redirect_uri:
            raise ConfigurationError("redirect_uri must be configured or passed to login_url()")

        await transient.clear()
        state = extra.pop("state", None)
        nonce = extra.pop("nonce", None)
        if state:
            await transient.set(STATE, str(state))
        else:
            state = await transient.issue(STATE)
        if nonce:
            await transient.set(NONCE, str(nonce))
        else:
            nonce = await transient.issue(NONCE)

        code_verifier = generate_code_verifier(128)
        await transient.set(CODE_VERIFIER, code_verifier)
        await transient.set(REDIRECT_URI, redirect_uri)

        max_age = extra.pop("max_age", None) or self.config.token_max_age
        if max_age:
            await transient.set(MAX_AGE, str(int(max_age)))

        query = _compact(
            {
                "response_type": self.config.response_type,
                "client_id": self.config.client_id,
                "redirect_uri": redirect_uri,
                "scope": scope or self.config.format_scope(),
                "response_mode": self.config.response_mode,
                "audience": audience or self.config.default_audience(),
                "organization": organization or self.config.default_organization(),
                "max_age": max_age,
            }
        )
        query.update(_compact({k: v for k, v in extra.items() if k not in _PKCE_PARAMS}))
        query.update(
            {
                "state": state,
                "nonce": nonce,
                "code_challenge": generate_code_challenge(code_verifier),
                "code_challenge_method": "S256",
            }
        )

        if self.config.pushed_authorization_request and self.par is not None:
            return await self.par.push(query)
        return f"{self.config.browser_base_url}/authorize?{urlencode(query)}"

    async def signup_url(self, transient: TransientStateHandler, **kwargs: Any) -> str:
        """Like :meth:`login_url`, asking the provider to show its signup screen."""
        params = {"screen_hint": "signup", **(kwargs.pop("params", None) or {})}
        return await self.login_url(transient, params=params, **kwargs)

    async def invitation_url(
        self,
        transient: TransientStateHandler,
        invitation: str,
        organization: str,
        **kwargs: Any,
    ) -> str:
        """Like :meth:`login_url`, accepting an organization invitation."""
        params = {**(kwargs.pop("params", None) or {}), "invitation": invitation}
        return await self.login_url(transient, organization=organization, params=params, **kwargs)

    def logout_url(
        self,
        return_to: str | None = None,
        *,
        id_token_hint: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Return the provider logout URL.

        With an *id_token_hint* the OIDC RP-initiated logout endpoint
        (``/oidc/logout``) is used; otherwise the classic ``/v2/logout``.
        """
        return_to = return_to or self.config.redirect_uri
        if id_token_hint:
            query = _compact(
                {
                    "id_token_hint": id_token_hint,
                    "post_logout_redirect_uri": return_to,
                    "client_id": self.config.client_id,
                    **(params or {}),
                }
            )
            return f"{self.config.browser_base_url}/oidc/logout?{urlencode(query)}"
        query = _compact({"returnTo": return_to, "client_id": self.config.client_id, **(params or {})})
        return f"{self.config.browser_base_url}/v2/logout?{urlencode(query)}"
