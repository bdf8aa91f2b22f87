"""Authenticated session lifecycle: establish, read, renew, revoke, clear.

A session is stored per end user under ``session:<session_id>``. Every
stored record carries a ``version``; renewal swaps the exact record it read
for the renewed one with :meth:`~ninja_oidc.stores.Store.compare_and_set`,
so two concurrent renewals cannot both win and a failed renewal never wipes
out a session another request has already refreshed.
"""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_serializer

from ninja_oidc.backchannel import BackchannelLogoutHandler
from ninja_oidc.errors import InvalidGrantError, InvalidTokenError
from ninja_oidc.exchange import TokenExchanger, TokenSet
from ninja_oidc.log_utils import mask
from ninja_oidc.stores import Store
from ninja_oidc.verifier import TokenVerifier

logger = logging.getLogger(__name__)

_SENSITIVE_PATTERN = re.compile(r"(secret|token|password|credential)", re.IGNORECASE)
_REDACTED = "***REDACTED***"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class Session(BaseModel):
    """Stored record of an authenticated end user."""

    user: dict[str, Any]
    id_token: str | None = Field(default=None, repr=False)
    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    access_token_expires_at: int
    access_token_scope: list[str] = Field(default_factory=list)
    established_at: float
    version: int = 1

    def is_expired(self, now: float) -> bool:
        return now >= self.access_token_expires_at


class Credentials(BaseModel):
    """Read view of a session handed to the application.

    Token values are available as attributes but are masked in ``repr()``
    and in ``model_dump()``/``model_dump_json()`` output.
    """

    user: dict[str, Any]
    id_token: str | None = None
    access_token: str
    access_token_scope: list[str] = Field(default_factory=list)
    access_token_expires_at: int
    access_token_expired: bool
    refresh_token: str | None = None

    @classmethod
    def from_session(cls, session: Session, now: float) -> Credentials:
        return cls(
            user=session.user,
            id_token=session.id_token,
            access_token=session.access_token,
            access_token_scope=session.access_token_scope,
            access_token_expires_at=session.access_token_expires_at,
            access_token_expired=session.is_expired(now),
            refresh_token=session.refresh_token,
        )

    @model_serializer
    def _serialize(self) -> dict[str, Any]:
        return {
            "user": {k: _REDACTED if _SENSITIVE_PATTERN.search(k) else v for k, v in self.user.items()},
            "id_token": _REDACTED if self.id_token else None,
            "access_token": _REDACTED,
            "access_token_scope": list(self.access_token_scope),
            "access_token_expires_at": self.access_token_expires_at,
            "access_token_expired": self.access_token_expired,
            "refresh_token": _REDACTED if self.refresh_token else None,
        }

    def __repr__(self) -> str:
        return (
            f"Credentials(sub={self.user.get('sub')!r}, scope={self.access_token_scope!r}, "
            f"expires_at={self.access_token_expires_at!r}, expired={self.access_token_expired!r})"
        )


def _expires_at(tokens: TokenSet, now: float, default_lifetime: int, previous: int = 0) -> int:
    """Access token expiry: ``expires_in`` when the provider sends it, else *default_lifetime*.

    Never earlier than *previous*, so a renewal always moves the expiry forward.
    """
    lifetime = tokens.expires_in if tokens.expires_in is not None and tokens.expires_in > 0 else default_lifetime
    return max(int(now) + lifetime, previous + 1)


class SessionManager:
    """Owns the stored session of every end user.

    Args:
        store: Session storage capability.
        exchanger: Used to redeem refresh tokens.
        verifier: Verifies ID tokens reissued during renewal.
        backchannel: When set, revocation markers are checked on every read.
        renewal_policy: ``"eager"`` renews an expired session inside
            :meth:`get_credentials`; ``"on_demand"`` returns it flagged as
            expired and leaves :meth:`renew` to the caller.
        default_scope: Scope recorded when the provider does not echo one.
        default_lifetime: Access token lifetime in seconds assumed when the
            token endpoint omits ``expires_in``.
    """

    def __init__(
        self,
        store: Store,
        exchanger: TokenExchanger,
        verifier: TokenVerifier,
        *,
        backchannel: BackchannelLogoutHandler | None = None,
        renewal_policy: Literal["eager", "on_demand"] = "eager",
        default_scope: tuple[str, ...] = (),
        default_lifetime: int = 3600,
    ) -> None:
        self.store = store
        self.exchanger = exchanger
        self.verifier = verifier
        self.backchannel = backchannel
        self.renewal_policy = renewal_policy
        self.default_scope = default_scope
        self.default_lifetime = default_lifetime

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    async def _load(self, session_id: str) -> tuple[dict[str, Any], Session] | None:
        raw = await self.store.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return raw, Session.model_validate(raw)
        except ValidationError:
            logger.warning(
                "Discarding unreadable session record",
                extra={"event": "session_corrupt", "session_id": mask(session_id)},
            )
            await self.store.compare_and_set(self._key(session_id), raw, None)
            return None

    async def establish(
        self,
        session_id: str,
        tokens: TokenSet,
        claims: dict[str, Any],
        *,
        now: float | None = None,
    ) -> Session:
        """Persist a new session from a verified token exchange, replacing any previous one."""
        now = time.time() if now is None else now
        session = Session(
            user={**claims, **(tokens.userinfo or {})},
            id_token=tokens.id_token,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expires_at=_expires_at(tokens, now, self.default_lifetime),
            access_token_scope=tokens.scope.split() if tokens.scope else list(self.default_scope),
            established_at=now,
        )
        await self.store.set(self._key(session_id), session.model_dump())
        logger.info(
            "Session established for sub=%s",
            mask(claims.get("sub")),
            extra={"event": "session_established", "session_id": mask(session_id)},
        )
        return session

    async def is_revoked(self, session: Session) -> bool:
        """Return whether a backchannel logout names this session's ``sid`` or ``sub``."""
        if self.backchannel is None:
            return False
        return await self.backchannel.is_revoked(
            session.user.get("sub"),
            session.user.get("sid"),
            established_at=session.established_at,
        )

    async def _load_live(self, session_id: str) -> tuple[dict[str, Any], Session] | None:
        """Load a session, destroying it if a backchannel logout revoked it."""
        loaded = await self._load(session_id)
        if loaded is None:
            return None
        raw, session = loaded
        if await self.is_revoked(session):
            await self.store.compare_and_set(self._key(session_id), raw, None)
            logger.info(
                "Session revoked by backchannel logout",
                extra={"event": "session_revoked", "session_id": mask(session_id)},
            )
            return None
        return loaded

    async def state(self, session_id: str, *, now: float | None = None) -> SessionState:
        now = time.time() if now is None else now
        loaded = await self._load_live(session_id)
        if loaded is None:
            return SessionState.UNAUTHENTICATED
        return SessionState.EXPIRED if loaded[1].is_expired(now) else SessionState.AUTHENTICATED

    async def get_credentials(self, session_id: str, *, now: float | None = None) -> Credentials | None:
        """Return the end user's credentials, or ``None`` when unauthenticated.

        An expired session without a refresh token is cleared. With a refresh
        token it is renewed first under the ``"eager"`` policy (a rejected
        renewal leaves the user unauthenticated) or returned flagged
        ``access_token_expired`` under ``"on_demand"``.

        Raises:
            NetworkError: Eager renewal could not reach the provider; the
                session is kept.
        """
        now = time.time() if now is None else now
        loaded = await self._load_live(session_id)
        if loaded is None:
            return None
        raw, session = loaded
        if not session.is_expired(now):
            return Credentials.from_session(session, now)

        if not session.refresh_token:
            await self.store.compare_and_set(self._key(session_id), raw, None)
            logger.info(
                "Expired session without refresh token cleared",
                extra={"event": "session_expired", "session_id": mask(session_id)},
            )
            return None
        if self.renewal_policy == "on_demand":
            return Credentials.from_session(session, now)

        try:
            return await self.renew(session_id, now=now)
        except (InvalidGrantError, InvalidTokenError):
            # A concurrent renewal may have won; serve its result if there is one.
            current = await self._load_live(session_id)
            if current is None or current[1].is_expired(now):
                return None
            return Credentials.from_session(current[1], now)

    async def renew(
        self,
        session_id: str,
        params: dict[str, Any] | None = None,
        *,
        now: float | None = None,
    ) -> Credentials:
        """Redeem the session's refresh token and store the renewed session.

        Raises:
            InvalidGrantError: There is no live session (none stored, or
                revoked by a backchannel logout) or no refresh token, the
                provider rejected the refresh token (the session is cleared
                unless another request already replaced it), or another
                request renewed the session first.
            NetworkError: The provider could not be reached; the session is kept.
            InvalidTokenError: A reissued ID token failed verification; the
                session is cleared.
        """
        now = time.time() if now is None else now
        key = self._key(session_id)
        loaded = await self._load_live(session_id)
        if loaded is None:
            raise InvalidGrantError("There is no session to renew")
        raw, session = loaded
        if not session.refresh_token:
            raise InvalidGrantError("The session has no refresh token")

        try:
            tokens = await self.exchanger.renew(session.refresh_token, params=params)
        except InvalidGrantError:
            await self._discard(session_id, raw, "Session cleared after rejected renewal")
            raise

        claims = None
        if tokens.id_token:
            try:
                claims = await self.verifier.verify_id_token(tokens.id_token, now=now)
            except InvalidTokenError:
                await self._discard(session_id, raw, "Session cleared after renewal returned an invalid ID token")
                raise
        renewed = session.model_copy(
            update={
                "user": {**session.user, **claims} if claims else session.user,
                "id_token": tokens.id_token or session.id_token,
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or session.refresh_token,
                "access_token_expires_at": _expires_at(
                    tokens, now, self.default_lifetime, session.access_token_expires_at
                ),
                "access_token_scope": tokens.scope.split() if tokens.scope else session.access_token_scope,
                "version": session.version + 1,
            }
        )

        if not await self.store.compare_and_set(key, raw, renewed.model_dump()):
            logger.info(
                "Discarding renewal; the session changed concurrently",
                extra={"event": "session_renewal_conflict", "session_id": mask(session_id)},
            )
            raise InvalidGrantError("The session was modified by a concurrent request; renewal discarded")

        logger.info(
            "Session renewed (version %d)",
            renewed.version,
            extra={"event": "session_renewed", "session_id": mask(session_id)},
        )
        return Credentials.from_session(renewed, now)

    async def _discard(self, session_id: str, raw: dict[str, Any], message: str) -> None:
        # Only the record that was read is removed; a newer one written meanwhile survives.
        if await self.store.compare_and_set(self._key(session_id), raw, None):
            logger.info(message, extra={"event": "session_cleared", "session_id": mask(session_id)})

    async def rotate(self, session_id: str, new_session_id: str) -> bool:
        """Move the stored session to *new_session_id*.

        Called after login so a session id known before authentication never
        identifies the authenticated session. Returns ``False`` when there is
        nothing to move.
        """
        old_key, new_key = self._key(session_id), self._key(new_session_id)
        raw = await self.store.get(old_key)
        if raw is None:
            return False
        await self.store.set(new_key, raw)
        if not await self.store.compare_and_set(old_key, raw, None):
            await self.store.delete(new_key)
            return False
        logger.info(
            "Session id rotated",
            extra={"event": "session_rotated", "session_id": mask(new_session_id)},
        )
        return True

    async def clear(self, session_id: str) -> None:
        await self.store.delete(self._key(session_id))
        logger.info("Session cleared", extra={"event": "session_cleared", "session_id": mask(session_id)})
