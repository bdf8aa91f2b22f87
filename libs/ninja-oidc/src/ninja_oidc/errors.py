"""Error types raised by the OIDC client core.

Exceptions are data-carrying so that web layers can turn them into HTTP
responses without inspecting message strings. ``to_payload()`` never includes
token values or secrets.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class OidcError(Exception):
    """Base class for all ninja-oidc errors."""

    code = "oidc_error"

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {"error": self.code, "message": str(self)}


class ConfigurationError(OidcError, ValueError):
    """Raised at construction time when a required setting is missing or invalid."""

    code = "configuration_error"


class StateMismatchError(OidcError):
    """Raised when the callback ``state`` does not match the stored value (CSRF defense)."""

    code = "invalid_state"


class MissingCodeError(StateMismatchError):
    """Raised when the callback carries no authorization ``code``."""

    code = "missing_code"


class PKCELengthError(OidcError, ValueError):
    """Raised when a code verifier length falls outside RFC 7636's 43-128 range."""

    code = "pkce_length"

    def __init__(self, length: int) -> None:
        super().__init__(
            "Code verifier must be created with a minimum length of 43 characters "
            f"and a maximum length of 128 characters, got {length}."
        )
        self.length = length


class NetworkError(OidcError):
    """Raised on transport failure or an unexpected HTTP status from the provider."""

    code = "network_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["status_code"] = self.status_code
        return payload


class ParResponseError(OidcError):
    """Raised when ``/oauth/par`` answers 201 with an unexpected body."""

    code = "par_response"

    def __init__(self, message: str | None = None, *, request: Any = None, response: Any = None) -> None:
        super().__init__(
            message or "The Pushed Authorization Request endpoint (`/oauth/par`) returned an unexpected response."
        )
        self.request = request
        self.response = response


class TokenCheck(str, Enum):
    """Identifies which verification step rejected a token."""

    FORMAT = "format"
    SIGNATURE = "signature"
    ISSUER = "issuer"
    SUBJECT = "subject"
    AUDIENCE = "audience"
    EXPIRY = "expiry"
    ISSUED_AT = "issued_at"
    NONCE = "nonce"
    AUTHORIZED_PARTY = "authorized_party"
    AUTH_TIME = "auth_time"
    ORGANIZATION = "organization"
    EVENTS = "events"


class InvalidTokenError(OidcError):
    """Raised when an ID or logout token fails verification."""

    code = "invalid_token"

    def __init__(self, check: TokenCheck, message: str) -> None:
        super().__init__(message)
        self.check = check

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["check"] = self.check.value
        return payload


class ReplayError(OidcError):
    """Raised internally when a logout token ``jti`` has already been processed."""

    code = "replay"

    def __init__(self, jti: str) -> None:
        super().__init__("Logout token has already been processed.")
        self.jti = jti


class InvalidGrantError(OidcError):
    """Raised when the provider rejects a code or refresh token; re-authentication is required."""

    code = "invalid_grant"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "status_code": self.status_code,
                "provider_error": self.error,
                "provider_error_description": self.error_description,
            }
        )
        return payload
