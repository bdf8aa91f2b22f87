"""Single-use storage for values that must survive the login -> callback round trip."""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from ninja_oidc.stores import Store

STATE = "state"
NONCE = "nonce"
CODE_VERIFIER = "code_verifier"
MAX_AGE = "max_age"
REDIRECT_URI = "redirect_uri"

TRANSIENT_KEYS = (STATE, NONCE, CODE_VERIFIER, MAX_AGE, REDIRECT_URI)


def random_token(num_bytes: int = 32) -> str:
    """Return a URL-safe random token carrying ``num_bytes * 8`` bits of entropy."""
    return secrets.token_urlsafe(num_bytes)


@dataclass(frozen=True)
class TransientAuthRequest:
    """Values bound to exactly one pending authorization attempt."""

    state: str | None
    nonce: str | None
    code_verifier: str | None
    max_age: int | None = None
    redirect_uri: str | None = None


class TransientStateHandler:
    """Namespaced view over a :class:`~ninja_oidc.stores.Store` for one end user's login attempt.

    Args:
        store: Backing storage capability.
        namespace: The end user's storage key (e.g. their session cookie id).
        ttl: Seconds a pending attempt is kept before it expires.
    """

    def __init__(self, store: Store, namespace: str, *, ttl: int = 600) -> None:
        self.store = store
        self.namespace = namespace
        self.ttl = ttl

    def _key(self, key: str) -> str:
        return f"transient:{self.namespace}:{key}"

    async def set(self, key: str, value: str) -> None:
        await self.store.set(self._key(key), value, ttl=self.ttl)

    async def issue(self, key: str) -> str:
        """Generate a random token, store it under *key* and return it."""
        token = random_token()
        await self.set(key, token)
        return token

    async def get(self, key: str) -> str | None:
        value = await self.store.get(self._key(key))
        return None if value is None else str(value)

    async def isset(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> None:
        await self.store.delete(self._key(key))

    async def get_once(self, key: str) -> str | None:
        """Return the value for *key* and delete it."""
        value = await self.get(key)
        await self.delete(key)
        return value

    async def verify(self, key: str, expected: str) -> bool:
        """Consume *key* and compare it with *expected* in constant time."""
        value = await self.get_once(key)
        if value is None or not expected:
            return False
        return hmac.compare_digest(value.encode(), expected.encode())

    async def consume(self) -> TransientAuthRequest:
        """Read every transient value and delete them all, whatever they hold.

        Always returns a request; fields that were never stored (or were
        already consumed) are ``None``.
        """
        values = {key: await self.get(key) for key in TRANSIENT_KEYS}
        await self.clear()
        max_age = values[MAX_AGE]
        return TransientAuthRequest(
            state=values[STATE],
            nonce=values[NONCE],
            code_verifier=values[CODE_VERIFIER],
            max_age=int(max_age) if max_age and max_age.isdigit() else None,
            redirect_uri=values[REDIRECT_URI],
        )

    async def clear(self) -> None:
        for key in TRANSIENT_KEYS:
            await self.delete(key)
