"""ID token and logout token verification.

Signature checking is delegated to a :class:`SignatureVerifierRegistry` keyed
by the JWS ``alg`` identifier, so supporting a new algorithm means registering
one more :class:`SignatureVerifier`. Claim checks run after the signature is
proven and each failure names the check that rejected the token
(:class:`~ninja_oidc.errors.TokenCheck`).
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import Any, Protocol, runtime_checkable

import jwt

from ninja_oidc.config import ASYMMETRIC_ALGORITHMS, HMAC_ALGORITHMS, SdkConfiguration
from ninja_oidc.errors import InvalidTokenError, TokenCheck
from ninja_oidc.jwks import JwksFetcher

logger = logging.getLogger(__name__)

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"

# Claim validation is done by TokenVerifier so every failure maps to a TokenCheck.
_SIGNATURE_ONLY = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
}


def _decode_verified(token: str, key: Any, algorithm: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, key, algorithms=[algorithm], options=_SIGNATURE_ONLY)
    except jwt.InvalidSignatureError as exc:
        raise InvalidTokenError(TokenCheck.SIGNATURE, "Cannot verify signature") from exc
    except jwt.InvalidAlgorithmError as exc:
        raise InvalidTokenError(TokenCheck.SIGNATURE, f"Signature algorithm '{algorithm}' is not allowed") from exc
    except jwt.DecodeError as exc:
        raise InvalidTokenError(TokenCheck.FORMAT, f"Token could not be decoded: {exc}") from exc
    except jwt.PyJWTError as exc:
        raise InvalidTokenError(TokenCheck.SIGNATURE, f"Cannot verify signature: {exc}") from exc


@runtime_checkable
class SignatureVerifier(Protocol):
    """Verifies a compact JWS and returns its (not yet validated) claims."""

    async def verify(self, token: str, header: dict[str, Any]) -> dict[str, Any]: ...


class SecretSignatureVerifier:
    """HMAC (``HS256``/``HS384``/``HS512``) verification with the client secret."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    async def verify(self, token: str, header: dict[str, Any]) -> dict[str, Any]:
        return _decode_verified(token, self._secret, header["alg"])


class JwksSignatureVerifier:
    """Asymmetric (RSA, RSA-PSS, EC) verification against the provider's JWKS."""

    def __init__(self, fetcher: JwksFetcher) -> None:
        self.fetcher = fetcher

    async def verify(self, token: str, header: dict[str, Any]) -> dict[str, Any]:
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise InvalidTokenError(TokenCheck.SIGNATURE, 'Cannot verify signature; token has no "kid" header')
        signing_key = await self.fetcher.get_signing_key(kid)
        return _decode_verified(token, signing_key.key, header["alg"])


class SignatureVerifierRegistry:
    """Maps JWS ``alg`` identifiers to the verifier responsible for them."""

    def __init__(self) -> None:
        self._verifiers: dict[str, SignatureVerifier] = {}

    def register(self, algorithm: str, verifier: SignatureVerifier) -> None:
        self._verifiers[algorithm] = verifier

    def get(self, algorithm: str) -> SignatureVerifier | None:
        return self._verifiers.get(algorithm)

    def __contains__(self, algorithm: object) -> bool:
        return algorithm in self._verifiers

    @classmethod
    def for_configuration(cls, config: SdkConfiguration, fetcher: JwksFetcher) -> SignatureVerifierRegistry:
        """Build the default registry: HMAC via the client secret, everything else via JWKS."""
        registry = cls()
        if config.client_secret:
            hmac_verifier = SecretSignatureVerifier(config.client_secret)
            for alg in HMAC_ALGORITHMS:
                registry.register(alg, hmac_verifier)
        jwks_verifier = JwksSignatureVerifier(fetcher)
        for alg in ASYMMETRIC_ALGORITHMS:
            registry.register(alg, jwks_verifier)
        return registry


class TokenVerifier:
    """Validates ID tokens and backchannel logout tokens against the configuration."""

    def __init__(self, config: SdkConfiguration, registry: SignatureVerifierRegistry) -> None:
        self.config = config
        self.registry = registry

    async def _verify_signature(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidTokenError(TokenCheck.FORMAT, "Token is not a compact JWS (expected three segments)")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as exc:
            raise InvalidTokenError(TokenCheck.FORMAT, f"Token header could not be decoded: {exc}") from exc

        alg = header.get("alg")
        expected = self.config.token_algorithm
        if alg != expected:
            raise InvalidTokenError(
                TokenCheck.SIGNATURE,
                f'Expected token signed with "{expected}" algorithm, but token uses "{alg}"',
            )
        verifier = self.registry.get(alg)
        if verifier is None:
            raise InvalidTokenError(TokenCheck.SIGNATURE, f'Signature algorithm "{alg}" is not supported')
        return await verifier.verify(token, header)

    # -- claim checks -------------------------------------------------------

    def _check_issuer(self, claims: dict[str, Any]) -> None:
        iss = claims.get("iss")
        if not isinstance(iss, str):
            raise InvalidTokenError(TokenCheck.ISSUER, "Issuer (iss) claim must be a string present in the token")
        if iss != self.config.issuer:
            raise InvalidTokenError(
                TokenCheck.ISSUER,
                f'Issuer (iss) claim mismatch in the token; expected "{self.config.issuer}", found "{iss}"',
            )

    def _check_audience(self, claims: dict[str, Any]) -> None:
        aud = claims.get("aud")
        audiences = [aud] if isinstance(aud, str) else aud
        if not isinstance(audiences, list) or not audiences:
            raise InvalidTokenError(TokenCheck.AUDIENCE, "Audience (aud) claim must be present in the token")
        if self.config.client_id not in audiences:
            raise InvalidTokenError(
                TokenCheck.AUDIENCE,
                f'Audience (aud) claim mismatch in the token; expected "{self.config.client_id}", '
                f'found "{", ".join(str(a) for a in audiences)}"',
            )
        if len(audiences) > 1:
            azp = claims.get("azp")
            if not isinstance(azp, str):
                raise InvalidTokenError(
                    TokenCheck.AUTHORIZED_PARTY,
                    "Authorized Party (azp) claim must be present when the token has multiple audiences",
                )
            if azp != self.config.client_id:
                raise InvalidTokenError(
                    TokenCheck.AUTHORIZED_PARTY,
                    f'Authorized Party (azp) claim mismatch; expected "{self.config.client_id}", found "{azp}"',
                )

    def _check_expiry(self, claims: dict[str, Any], now: float) -> None:
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            raise InvalidTokenError(TokenCheck.EXPIRY, "Expiration Time (exp) claim must be a number present in the token")
        if now > exp + self.config.token_leeway:
            raise InvalidTokenError(
                TokenCheck.EXPIRY,
                f"Expiration Time (exp) claim error in the token; current time {int(now)} "
                f"is after expiration time {int(exp + self.config.token_leeway)}",
            )

    @staticmethod
    def _check_issued_at(claims: dict[str, Any]) -> None:
        if not isinstance(claims.get("iat"), (int, float)):
            raise InvalidTokenError(TokenCheck.ISSUED_AT, "Issued At (iat) claim must be a number present in the token")

    @staticmethod
    def _check_nonce(claims: dict[str, Any], expected: str) -> None:
        nonce = claims.get("nonce")
        if not isinstance(nonce, str):
            raise InvalidTokenError(TokenCheck.NONCE, "Nonce (nonce) claim must be a string present in the ID token")
        if not hmac.compare_digest(nonce.encode(), expected.encode()):
            raise InvalidTokenError(TokenCheck.NONCE, "Nonce (nonce) claim mismatch in the ID token")

    def _check_auth_time(self, claims: dict[str, Any], max_age: int, now: float) -> None:
        auth_time = claims.get("auth_time")
        if not isinstance(auth_time, (int, float)):
            raise InvalidTokenError(
                TokenCheck.AUTH_TIME,
                "Authentication Time (auth_time) claim must be a number present in the ID token when max_age is requested",
            )
        valid_until = auth_time + max_age + self.config.token_leeway
        if now > valid_until:
            raise InvalidTokenError(
                TokenCheck.AUTH_TIME,
                f"Authentication Time (auth_time) claim indicates that too much time has passed since the "
                f"last end-user authentication; current time {int(now)} is after {int(valid_until)}",
            )

    @staticmethod
    def _check_organization(claims: dict[str, Any], allowed: tuple[str, ...]) -> None:
        """Accept the token when its ``org_id`` or ``org_name`` matches any allowed entry.

        Entries starting with ``org_`` are ids (exact match); anything else is
        a name, compared case-insensitively.
        """
        ids = {o for o in allowed if o.startswith("org_")}
        names = {o.lower() for o in allowed if not o.startswith("org_")}
        org_id = claims.get("org_id")
        org_name = claims.get("org_name")
        if ids and isinstance(org_id, str) and org_id in ids:
            return
        if names and isinstance(org_name, str) and org_name.lower() in names:
            return
        if not isinstance(org_id, str) and not isinstance(org_name, str):
            raise InvalidTokenError(
                TokenCheck.ORGANIZATION,
                "Organization Id (org_id) or Organization Name (org_name) claim must be present in the ID token",
            )
        raise InvalidTokenError(
            TokenCheck.ORGANIZATION,
            f'Organization claim mismatch in the ID token; expected one of "{", ".join(allowed)}", '
            f'found "{org_id or org_name}"',
        )

    # -- public API -----------------------------------------------------------

    async def verify_id_token(
        self,
        token: str,
        *,
        nonce: str | None = None,
        max_age: int | None = None,
        organization: str | tuple[str, ...] | None = None,
        now: float | None = None,
    ) -> dict[str, Any]:
        """Verify an ID token and return its claims.

        Args:
            token: The compact-serialised ID token.
            nonce: Expected ``nonce`` claim; checked only when supplied.
            max_age: Maximum authentication age in seconds; enables the
                ``auth_time`` check (the login attempt records the configured value).
            organization: Allowed organization id(s) (``org_...``) or name(s).
            now: Evaluation time as UNIX seconds (defaults to ``time.time()``).

        Raises:
            InvalidTokenError: With ``check`` naming the failed verification step.
        """
        now = time.time() if now is None else now
        try:
            claims = await self._verify_signature(token)
            self._check_issuer(claims)
            if not isinstance(claims.get("sub"), str):
                raise InvalidTokenError(TokenCheck.SUBJECT, "Subject (sub) claim must be a string present in the ID token")
            self._check_audience(claims)
            self._check_expiry(claims, now)
            self._check_issued_at(claims)
            if nonce is not None:
                self._check_nonce(claims, nonce)
            if max_age is not None:
                self._check_auth_time(claims, max_age, now)
            if organization:
                self._check_organization(claims, (organization,) if isinstance(organization, str) else organization)
        except InvalidTokenError as exc:
            logger.warning(
                "ID token rejected: check=%s",
                exc.check.value,
                extra={"event": "token_validation_failed", "token_type": "id_token", "reason": exc.check.value},
            )
            raise
        return claims

    async def verify_access_token(
        self,
        token: str,
        *,
        audience: tuple[str, ...] | None = None,
        organization: str | tuple[str, ...] | None = None,
        now: float | None = None,
    ) -> dict[str, Any]:
        """Verify a JWT access token presented as a bearer token and return its claims.

        Checks the signature, issuer and expiry, and that ``aud`` names at
        least one of *audience* (defaults to ``config.audience``) or the
        client id. ``sub``, ``iat`` and ``azp`` are not required.

        Raises:
            InvalidTokenError: With ``check`` naming the failed verification step.
        """
        now = time.time() if now is None else now
        allowed = {*(self.config.audience if audience is None else audience), self.config.client_id}
        try:
            claims = await self._verify_signature(token)
            self._check_issuer(claims)
            aud = claims.get("aud")
            audiences = [aud] if isinstance(aud, str) else aud
            if not isinstance(audiences, list) or not audiences:
                raise InvalidTokenError(TokenCheck.AUDIENCE, "Audience (aud) claim must be present in the token")
            if not allowed.intersection(a for a in audiences if isinstance(a, str)):
                raise InvalidTokenError(
                    TokenCheck.AUDIENCE,
                    f'Audience (aud) claim mismatch in the token; expected one of "{", ".join(sorted(allowed))}", '
                    f'found "{", ".join(str(a) for a in audiences)}"',
                )
            self._check_expiry(claims, now)
            if organization:
                self._check_organization(claims, (organization,) if isinstance(organization, str) else organization)
        except InvalidTokenError as exc:
            logger.warning(
                "Access token rejected: check=%s",
                exc.check.value,
                extra={"event": "token_validation_failed", "token_type": "access_token", "reason": exc.check.value},
            )
            raise
        return claims

    async def verify_logout_token(self, token: str, *, now: float | None = None) -> dict[str, Any]:
        """Verify a backchannel logout token and return its claims.

        Runs the ID token signature, issuer, audience, expiry and issued-at
        checks, then requires the backchannel-logout event, a ``sub`` or
        ``sid``, a ``jti``, and the absence of ``nonce``.
        """
        now = time.time() if now is None else now
        try:
            claims = await self._verify_signature(token)
            self._check_issuer(claims)
            self._check_audience(claims)
            self._check_expiry(claims, now)
            self._check_issued_at(claims)

            events = claims.get("events")
            if not isinstance(events, dict) or BACKCHANNEL_LOGOUT_EVENT not in events:
                raise InvalidTokenError(
                    TokenCheck.EVENTS,
                    f'Logout token "events" claim must contain "{BACKCHANNEL_LOGOUT_EVENT}"',
                )
            if not isinstance(claims.get("sub"), str) and not isinstance(claims.get("sid"), str):
                raise InvalidTokenError(TokenCheck.SUBJECT, 'Logout token must carry a "sub" or "sid" claim')
            if not isinstance(claims.get("jti"), str) or not claims["jti"]:
                raise InvalidTokenError(TokenCheck.FORMAT, 'Logout token must carry a "jti" claim')
            if "nonce" in claims:
                raise InvalidTokenError(TokenCheck.NONCE, 'Logout token must not carry a "nonce" claim')
        except InvalidTokenError as exc:
            logger.warning(
                "Logout token rejected: check=%s",
                exc.check.value,
                extra={"event": "token_validation_failed", "token_type": "logout_token", "reason": exc.check.value},
            )
            raise
        return claims
