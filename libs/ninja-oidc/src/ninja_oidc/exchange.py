"""Token endpoint calls: authorization code exchange, refresh and userinfo."""

from __future__ import annotations

import hmac
import logging
from typing import Any

from pydantic import BaseModel, Field

from ninja_oidc.client_auth import apply_client_authentication
from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import InvalidGrantError, MissingCodeError, NetworkError, StateMismatchError
from ninja_oidc.http import HttpClient, HttpResponse
from ninja_oidc.transient import TransientStateHandler

logger = logging.getLogger(__name__)


class TokenSet(BaseModel):
    """Tokens returned by ``/oauth/token`` plus the login attempt's binding values."""

    access_token: str = Field(repr=False)
    id_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    token_type: str | None = None
    expires_in: int | None = None
    scope: str | None = None

    # Copied from the consumed transient request for ID token verification.
    nonce: str | None = Field(default=None, repr=False)
    max_age: int | None = None

    userinfo: dict[str, Any] | None = None

    @classmethod
    def from_response(cls, body: dict[str, Any], **extra: Any) -> TokenSet:
        expires_in = body.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            access_token=body["access_token"],
            id_token=body.get("id_token") or None,
            refresh_token=body.get("refresh_token") or None,
            token_type=body.get("token_type"),
            expires_in=expires_in,
            scope=body.get("scope"),
            **extra,
        )


def _provider_error(resp: HttpResponse) -> tuple[str | None, str | None]:
    body = resp.json()
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    description = body.get("error_description")
    return (
        error if isinstance(error, str) else None,
        description if isinstance(description, str) else None,
    )


class TokenExchanger:
    """Redeems authorization codes and refresh tokens at the provider's token endpoint."""

    def __init__(self, config: SdkConfiguration, http: HttpClient) -> None:
        self.config = config
        self.http = http

    @property
    def token_endpoint(self) -> str:
        return f"{self.config.api_base_url}/oauth/token"

    async def _request_tokens(self, data: dict[str, str]) -> dict[str, Any]:
        grant_type = data["grant_type"]
        headers: dict[str, str] = {}
        apply_client_authentication(self.config, data, headers)
        resp = await self.http.request("POST", self.token_endpoint, headers=headers, data=data)

        if 400 <= resp.status_code < 500:
            error, description = _provider_error(resp)
            logger.warning(
                "Token endpoint rejected %s grant: status=%d error=%s",
                grant_type,
                resp.status_code,
                error,
                extra={"event": "token_grant_rejected", "grant_type": grant_type, "status_code": resp.status_code},
            )
            raise InvalidGrantError(
                f"The token endpoint rejected the {grant_type} grant ({error or resp.status_code})",
                status_code=resp.status_code,
                error=error,
                error_description=description,
            )
        if resp.status_code != 200:
            raise NetworkError(
                f"Token endpoint returned an unexpected status {resp.status_code}",
                status_code=resp.status_code,
            )

        body = resp.json()
        if not isinstance(body, dict) or not isinstance(body.get("access_token"), str) or not body["access_token"]:
            raise InvalidGrantError(
                f"The token endpoint response for the {grant_type} grant did not include an access token",
                status_code=resp.status_code,
            )
        return body

    async def exchange(
        self,
        transient: TransientStateHandler,
        *,
        code: str | None,
        state: str | None,
        redirect_uri: str | None = None,
    ) -> TokenSet:
        """Redeem the authorization *code* returned to the callback.

        The pending login attempt is consumed before anything else, so it is
        gone whether or not the exchange succeeds.

        Args:
            transient: The end user's transient store holding the pending attempt.
            code: The ``code`` callback parameter.
            state: The ``state`` callback parameter.
            redirect_uri: Overrides the redirect URI recorded at login.

        Raises:
            MissingCodeError: No authorization code was supplied.
            StateMismatchError: The state is missing or differs from the stored
                one, or no code verifier is pending. The token endpoint is not called.
            InvalidGrantError: The provider rejected the code.
            NetworkError: The token endpoint could not be reached.
        """
        pending = await transient.consume()

        if not code:
            raise MissingCodeError("Missing authorization code in the callback")
        if not pending.state or not state or not hmac.compare_digest(pending.state.encode(), state.encode()):
            logger.warning(
                "Callback state does not match the pending login attempt",
                extra={"event": "state_mismatch", "namespace": transient.namespace},
            )
            raise StateMismatchError("Invalid state")
        if not pending.code_verifier:
            raise StateMismatchError("Missing code_verifier for the pending login attempt")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": pending.code_verifier,
        }
        redirect_uri = redirect_uri or pending.redirect_uri or self.config.redirect_uri
        if redirect_uri:
            data["redirect_uri"] = redirect_uri

        body = await self._request_tokens(data)
        tokens = TokenSet.from_response(body, nonce=pending.nonce, max_age=pending.max_age)
        logger.info(
            "Authorization code exchanged",
            extra={"event": "code_exchanged", "has_refresh_token": tokens.refresh_token is not None},
        )

        if self.config.query_user_info:
            tokens = tokens.model_copy(update={"userinfo": await self.userinfo(tokens.access_token)})
        return tokens

    async def renew(self, refresh_token: str | None, *, params: dict[str, Any] | None = None) -> TokenSet:
        """Obtain fresh tokens with a refresh token.

        Raises:
            InvalidGrantError: No refresh token, a 4xx answer, or no access
                token in the response.
            NetworkError: The token endpoint could not be reached.
        """
        if not refresh_token:
            raise InvalidGrantError("A refresh token is required to renew the access token")
        data = {
            **{k: str(v) for k, v in (params or {}).items() if v is not None},
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        body = await self._request_tokens(data)
        logger.info("Access token renewed", extra={"event": "token_renewed"})
        return TokenSet.from_response(body)

    async def userinfo(self, access_token: str) -> dict[str, Any]:
        """Fetch the end user's profile from ``/userinfo``."""
        resp = await self.http.request(
            "GET",
            f"{self.config.api_base_url}/userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        body = resp.json()
        if resp.status_code != 200 or not isinstance(body, dict):
            raise NetworkError(
                f"Userinfo endpoint returned an unexpected response (status {resp.status_code})",
                status_code=resp.status_code,
            )
        return body
