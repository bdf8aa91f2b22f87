"""OIDC Back-Channel Logout receiver.

The provider POSTs a signed logout token when a user's session ends
elsewhere. Verified tokens leave revocation markers in the configured
:class:`~ninja_oidc.stores.Cache`, keyed by the token's ``sid`` and/or
``sub``; the session manager consults them on every read. Each marker
records when the logout was received, so a session established afterwards
is not affected by an older marker.
"""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import parse_qs

from starlette.requests import Request

from ninja_oidc.config import SdkConfiguration
from ninja_oidc.errors import ConfigurationError, OidcError, ReplayError
from ninja_oidc.log_utils import fingerprint, mask
from ninja_oidc.stores import Cache
from ninja_oidc.verifier import TokenVerifier

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MARKER_PREFIX = "backchannel-logout"


def marker_key(kind: str, value: str) -> str:
    """Cache key for a ``sid``/``sub`` revocation marker or a seen ``jti``."""
    return f"{MARKER_PREFIX}:{kind}:{fingerprint(value, 64)}"


class BackchannelLogoutHandler:
    """Verifies logout tokens and records session revocations.

    Args:
        config: Client configuration; its ``backchannel_logout_cache`` is used
            unless *cache* is given.
        verifier: Token verifier used for the logout token checks.
        cache: Explicit cache capability.

    Raises:
        ConfigurationError: No cache is available.
    """

    def __init__(self, config: SdkConfiguration, verifier: TokenVerifier, *, cache: Cache | None = None) -> None:
        self.config = config
        self.verifier = verifier
        resolved = cache if cache is not None else config.backchannel_logout_cache
        if resolved is None:
            raise ConfigurationError("Backchannel logout requires a backchannel_logout_cache")
        self.cache: Cache = resolved

    async def handle_logout_token(self, token: str, *, now: float | None = None) -> bool:
        """Verify *token* and revoke the sessions it names.

        Returns:
            ``True`` when markers were written, ``False`` when the token's
            ``jti`` was already processed.

        Raises:
            InvalidTokenError: The token failed verification.
        """
        now = time.time() if now is None else now
        claims = await self.verifier.verify_logout_token(token, now=now)
        ttl = max(int(claims["exp"] - now), 1)

        try:
            await self._claim_jti(claims["jti"], ttl)
        except ReplayError:
            logger.info(
                "Ignoring replayed logout token",
                extra={"event": "backchannel_logout_replay", "jti": mask(claims["jti"])},
            )
            return False

        marker = {"revoked_at": now}
        sid = claims.get("sid")
        sub = claims.get("sub")
        try:
            if isinstance(sid, str) and sid:
                await self.cache.set(marker_key("sid", sid), marker, ttl=ttl)
            if isinstance(sub, str) and sub:
                await self.cache.set(marker_key("sub", sub), marker, ttl=ttl)
        except Exception:
            # Release the jti so the provider's redelivery is processed instead of dropped as a replay.
            await self.cache.delete(marker_key("jti", claims["jti"]))
            raise

        logger.info(
            "Backchannel logout recorded for sub=%s sid=%s",
            mask(sub),
            mask(sid),
            extra={"event": "backchannel_logout", "ttl": ttl},
        )
        return True

    async def _claim_jti(self, jti: str, ttl: int) -> None:
        if not await self.cache.add(marker_key("jti", jti), True, ttl=ttl):
            raise ReplayError(jti)

    async def handle_request(self, request: Request) -> bool:
        """Process an incoming backchannel logout HTTP request.

        Only ``POST`` requests with a form-encoded ``logout_token`` are
        considered. Anything else, including tokens that fail verification,
        is logged and ignored; this method never raises.
        """
        if request.method != "POST":
            return self._ignore("method_not_allowed", method=request.method)
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type != FORM_CONTENT_TYPE:
            return self._ignore("unsupported_content_type", content_type=content_type)

        try:
            fields = parse_qs((await request.body()).decode("utf-8"))
        except UnicodeDecodeError:
            return self._ignore("undecodable_body")
        token = (fields.get("logout_token") or [""])[0].strip()
        if not token:
            return self._ignore("missing_logout_token")

        try:
            return await self.handle_logout_token(token)
        except OidcError as exc:
            return self._ignore(exc.code, detail=str(exc))
        except OSError as exc:
            logger.error(
                "Backchannel logout could not be recorded: %s",
                exc,
                extra={"event": "backchannel_logout_failed"},
            )
            return False

    @staticmethod
    def _ignore(reason: str, **details: Any) -> bool:
        logger.warning(
            "Ignoring backchannel logout request: %s",
            reason,
            extra={"event": "backchannel_logout_ignored", "reason": reason, **details},
        )
        return False

    async def is_revoked(self, sub: str | None, sid: str | None, *, established_at: float | None = None) -> bool:
        """Return whether a logout was received for *sid* or *sub*.

        When *established_at* is given, only markers recorded at or after
        that moment count.
        """
        for kind, value in (("sid", sid), ("sub", sub)):
            if not value:
                continue
            marker = await self.cache.get(marker_key(kind, value))
            if marker is None:
                continue
            revoked_at = marker.get("revoked_at") if isinstance(marker, dict) else None
            if established_at is None or not isinstance(revoked_at, (int, float)) or established_at <= revoked_at:
                return True
        return False
