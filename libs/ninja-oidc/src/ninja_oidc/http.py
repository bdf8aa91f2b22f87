"""HTTP client capability used for every call to the identity provider.

The core never opens sockets itself: it talks to an :class:`HttpClient`
supplied by the host application. :class:`HttpxClient` is the default
implementation on top of :class:`httpx.AsyncClient`, and it owns the
transport retry policy: connection errors, timeouts and 5xx answers are
retried a bounded number of times with exponential backoff. Any completed
exchange is returned as-is; deciding whether a status is acceptable is the
caller's job.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from ninja_oidc.errors import NetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Transport-neutral view of a completed HTTP exchange."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    text: str = ""

    def json(self) -> Any:
        """Decode the body as JSON; return ``None`` when it is not valid JSON."""
        try:
            return json.loads(self.text)
        except (TypeError, ValueError):
            return None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class HttpClient(Protocol):
    """Minimal request capability the OIDC core depends on."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
    ) -> HttpResponse:
        """Send a request and return the provider's response.

        ``data`` is sent form-encoded. Raises
        :class:`~ninja_oidc.errors.NetworkError` when no response could be
        obtained.
        """
        ...


class HttpxClient:
    """:class:`HttpClient` backed by :class:`httpx.AsyncClient` with retry and backoff.

    Args:
        client: Optional pre-configured ``httpx.AsyncClient`` (e.g. with a
            mock transport in tests). One is created lazily otherwise.
        timeout: Per-request timeout in seconds.
        max_retries: Extra attempts after the first one for retryable failures.
        backoff_factor: Base delay; attempt *n* waits ``backoff_factor * 2**n``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, headers={"Accept": "application/json"})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
    ) -> HttpResponse:
        client = self._get_client()
        for attempt in range(self.max_retries + 1):
            delay = self.backoff_factor * (2**attempt)
            try:
                resp = await client.request(method, url, headers=headers, data=data)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                if attempt < self.max_retries:
                    logger.warning(
                        "Request to %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                        url,
                        type(exc).__name__,
                        delay,
                        attempt + 1,
                        self.max_retries,
                        extra={"event": "http_retry", "url": url, "reason": type(exc).__name__},
                    )
                    await asyncio.sleep(delay)
                    continue
                raise NetworkError(f"Request to {url} failed after {attempt + 1} attempts: {exc}") from exc

            if resp.status_code >= 500 and attempt < self.max_retries:
                logger.warning(
                    "Server error %d from %s, retrying in %.2fs (attempt %d/%d)",
                    resp.status_code,
                    url,
                    delay,
                    attempt + 1,
                    self.max_retries,
                    extra={"event": "http_retry", "url": url, "status_code": resp.status_code},
                )
                await asyncio.sleep(delay)
                continue

            logger.debug(
                "%s %s -> %d",
                method.upper(),
                url,
                resp.status_code,
                extra={"event": "http_response", "url": url, "status_code": resp.status_code},
            )
            return HttpResponse(status_code=resp.status_code, headers=dict(resp.headers), text=resp.text)

        raise NetworkError(f"Request to {url} failed after all retries")  # pragma: no cover
