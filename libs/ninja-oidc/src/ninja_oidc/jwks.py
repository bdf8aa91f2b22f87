"""JSON Web Key Set retrieval with TTL caching."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import jwt

from ninja_oidc.errors import InvalidTokenError, NetworkError, TokenCheck
from ninja_oidc.http import HttpClient
from ninja_oidc.log_utils import fingerprint
from ninja_oidc.stores import Cache, InMemoryStore

logger = logging.getLogger(__name__)


class JwksFetcher:
    """Fetches the provider's signing keys and resolves them by ``kid``.

    The key set is cached for ``ttl`` seconds. A ``kid`` missing from the
    cached set triggers one refetch (keys may have rotated); if the fresh set
    still lacks it, the miss is remembered for ``ttl`` seconds so a flood of
    tokens with a bogus ``kid`` cannot hammer the JWKS endpoint.
    """

    def __init__(self, jwks_uri: str, http: HttpClient, *, cache: Cache | None = None, ttl: int = 600) -> None:
        self.jwks_uri = jwks_uri
        self.http = http
        self.cache: Cache = cache or InMemoryStore()
        self.ttl = ttl
        self._fetch_lock = asyncio.Lock()
        self._cache_key = f"jwks:{fingerprint(jwks_uri, 64)}"

    def _miss_key(self, kid: str) -> str:
        return f"{self._cache_key}:miss:{fingerprint(kid, 64)}"

    async def fetch(self) -> dict[str, dict[str, Any]]:
        """Download the key set and return it indexed by ``kid``."""
        resp = await self.http.request("GET", self.jwks_uri)
        if resp.status_code != 200:
            raise NetworkError(
                f"JWKS endpoint returned an unexpected status {resp.status_code}",
                status_code=resp.status_code,
            )
        body = resp.json()
        raw_keys = body.get("keys") if isinstance(body, dict) else None
        if not isinstance(raw_keys, list):
            raise NetworkError("JWKS endpoint returned a document without a 'keys' array", status_code=200)

        keys = {k["kid"]: k for k in raw_keys if isinstance(k, dict) and isinstance(k.get("kid"), str)}
        logger.debug(
            "Fetched %d signing keys from %s",
            len(keys),
            self.jwks_uri,
            extra={"event": "jwks_fetched", "key_count": len(keys)},
        )
        if keys and self.ttl:
            await self.cache.set(self._cache_key, keys, ttl=self.ttl)
        return keys

    async def get_key_set(self) -> dict[str, dict[str, Any]]:
        cached = await self.cache.get(self._cache_key)
        if isinstance(cached, dict):
            return cached
        async with self._fetch_lock:
            cached = await self.cache.get(self._cache_key)
            if isinstance(cached, dict):
                return cached
            return await self.fetch()

    async def get_signing_key(self, kid: str) -> jwt.PyJWK:
        """Return the verification key for *kid*.

        Raises:
            InvalidTokenError: ``SIGNATURE`` check, when no usable key matches.
        """
        keys = await self.get_key_set()
        if kid not in keys and not await self.cache.has(self._miss_key(kid)):
            async with self._fetch_lock:
                if not await self.cache.has(self._miss_key(kid)):
                    keys = await self.fetch()
                    if kid not in keys:
                        await self.cache.set(self._miss_key(kid), True, ttl=self.ttl or 60)

        jwk = keys.get(kid)
        if jwk is None:
            logger.warning(
                "No signing key matches kid=%s",
                kid,
                extra={"event": "jwks_unknown_kid", "kid": kid},
            )
            raise InvalidTokenError(TokenCheck.SIGNATURE, f'Cannot verify signature; no signing key matches kid "{kid}"')
        try:
            return jwt.PyJWK(jwk)
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(TokenCheck.SIGNATURE, f'Signing key "{kid}" cannot be used: {exc}') from exc
