"""Storage and cache capabilities with interchangeable implementations.

Two protocols describe what the OIDC core needs from a backend:

* :class:`Store`: key/value storage for transient login state and sessions,
  with an atomic :meth:`Store.compare_and_set` used by token renewal.
* :class:`Cache`: TTL-keyed cache for JWKS documents, backchannel logout
  markers and ``jti`` replay detection.
  :meth:`Cache.add` is an atomic *insert if absent*.

Every implementation in this module satisfies both protocols:

* :class:`NullStore`: discards everything (disables caching / replay checks).
* :class:`InMemoryStore`: process-local, guarded by an :class:`asyncio.Lock`.
* :class:`FileStore`: JSON files with atomic replace and an advisory lock
  file, usable by several worker processes on one host.

Values must be JSON-serialisable.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Store(Protocol):
    """Key/value storage for per-user transient and session data."""

    async def get(self, key: str) -> Any | None:
        """Return the value for *key*, or ``None`` if missing or expired."""
        ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store *value* under *key*, optionally expiring after *ttl* seconds."""
        ...

    async def delete(self, key: str) -> None:
        """Remove *key*; deleting a missing key is a no-op."""
        ...

    async def compare_and_set(self, key: str, expected: Any | None, value: Any | None, ttl: float | None = None) -> bool:
        """Atomically replace the value of *key* if it still equals *expected*.

        ``expected=None`` means "only if absent"; ``value=None`` deletes the key.

        Returns:
            ``True`` if the swap happened, ``False`` if the stored value differed.
        """
        ...


@runtime_checkable
class Cache(Protocol):
    """TTL-keyed cache used for JWKS documents, logout markers and replay detection."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    async def has(self, key: str) -> bool: ...

    async def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Insert *value* only if *key* is absent; return ``True`` when inserted."""
        ...

    async def delete(self, key: str) -> None: ...


class NullStore:
    """A store that keeps nothing.

    Useful to switch off caching entirely. Used as a replay cache it disables
    ``jti`` replay detection, since :meth:`add` always reports an insert.
    """

    async def get(self, key: str) -> Any | None:
        return None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def has(self, key: str) -> bool:
        return False

    async def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        return True

    async def compare_and_set(self, key: str, expected: Any | None, value: Any | None, ttl: float | None = None) -> bool:
        return expected is None


class InMemoryStore:
    """In-memory implementation of :class:`Store` and :class:`Cache` with TTL expiration.

    Suitable for development and single-process deployments. Production systems
    with several workers should use :class:`FileStore` or a shared backend that
    implements the same protocols.
    """

    def __init__(self) -> None:
        self._store: dict[str, tuple[Any, float | None]] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> Any | None:
        """Return the live value for *key*, evicting it when expired. Caller holds the lock."""
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() > expires_at:
            del self._store[key]
            return None
        return value

    def _write(self, key: str, value: Any, ttl: float | None) -> None:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        self._store[key] = (copy.deepcopy(value), expires_at)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return copy.deepcopy(self._read(key))

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        async with self._lock:
            self._write(key, value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def has(self, key: str) -> bool:
        async with self._lock:
            return self._read(key) is not None

    async def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        async with self._lock:
            if self._read(key) is not None:
                return False
            self._write(key, value, ttl)
            return True

    async def compare_and_set(self, key: str, expected: Any | None, value: Any | None, ttl: float | None = None) -> bool:
        async with self._lock:
            if self._read(key) != expected:
                return False
            if value is None:
                self._store.pop(key, None)
            else:
                self._write(key, value, ttl)
            return True

    async def _purge_expired(self) -> int:
        """Remove all expired entries and return the count of purged items.

        This is exposed for testing and optional periodic cleanup.
        """
        now = time.monotonic()
        async with self._lock:
            expired_keys = [k for k, (_, exp) in self._store.items() if exp is not None and now > exp]
            for key in expired_keys:
                del self._store[key]
        return len(expired_keys)


def _atomic_write(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)


def _break_stale_lock(lock_path: Path, stale_after: float) -> bool:
    """Remove *lock_path* if its holder has kept it longer than *stale_after* seconds."""
    try:
        age = time.time() - lock_path.stat().st_mtime
    except FileNotFoundError:
        return True
    if age <= stale_after:
        return False
    try:
        holder = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        holder = ""
    logger.warning(
        "Breaking stale store lock %s held for %.1fs by %s",
        lock_path,
        age,
        holder or "unknown",
        extra={"event": "store_lock_stale", "path": str(lock_path)},
    )
    lock_path.unlink(missing_ok=True)
    return True


@asynccontextmanager
async def _file_lock(
    lock_path: Path,
    retries: int = 100,
    delay: float = 0.05,
    stale_after: float = 30.0,
) -> AsyncIterator[None]:
    """Advisory lock based on exclusive lock-file creation.

    The lock file records the holder's pid and acquisition time. A lock
    older than *stale_after* seconds is assumed to belong to a dead process
    and is broken.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
        except FileExistsError:
            if _break_stale_lock(lock_path, stale_after):
                continue
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            await asyncio.sleep(delay)
        else:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(f"{os.getpid()} {time.time():.3f}\n")
            break
    else:
        raise TimeoutError(f"Could not acquire lock {lock_path}")
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


class FileStore:
    """JSON-file implementation of :class:`Store` and :class:`Cache`.

    Each key lives in its own file named after the SHA-256 of the key, so
    externally supplied identifiers never reach the filesystem. Writes use
    temp-file + :func:`os.replace`; read-modify-write operations
    (:meth:`add`, :meth:`compare_and_set`) hold an advisory lock file so they
    stay atomic across processes. Expiry uses wall-clock time.
    """

    def __init__(self, base_dir: str | os.PathLike[str]) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.base_dir / f"{hashlib.sha256(key.encode()).hexdigest()}.json"

    @property
    def _lock_path(self) -> Path:
        return self.base_dir / ".lock"

    def _read(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            with path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning(
                "Discarding unreadable store entry %s",
                path.name,
                extra={"event": "store_entry_corrupt", "path": str(path)},
            )
            path.unlink(missing_ok=True)
            return None
        expires_at = data.get("expires_at")
        if expires_at is not None and time.time() > expires_at:
            path.unlink(missing_ok=True)
            return None
        return data.get("value")

    def _write(self, key: str, value: Any, ttl: float | None) -> None:
        expires_at = time.time() + ttl if ttl is not None else None
        _atomic_write(self._path(key), {"value": value, "expires_at": expires_at})

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        async with self._lock, _file_lock(self._lock_path):
            yield

    async def get(self, key: str) -> Any | None:
        return self._read(key)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        async with self._exclusive():
            self._write(key, value, ttl)

    async def delete(self, key: str) -> None:
        async with self._exclusive():
            self._path(key).unlink(missing_ok=True)

    async def has(self, key: str) -> bool:
        return self._read(key) is not None

    async def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        async with self._exclusive():
            if self._read(key) is not None:
                return False
            self._write(key, value, ttl)
            return True

    async def compare_and_set(self, key: str, expected: Any | None, value: Any | None, ttl: float | None = None) -> bool:
        async with self._exclusive():
            if self._read(key) != expected:
                return False
            if value is None:
                self._path(key).unlink(missing_ok=True)
            else:
                self._write(key, value, ttl)
            return True
