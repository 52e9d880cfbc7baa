"""
Session-scoped persisted cache for the discovered manifest.

Values outlive the process for a session window (ttl) so a restart within the
window does not force rediscovery. Every backend treats absence, expiry, and
unreadable data as a miss; persistence failures are logged, never raised.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path

from persistence.keydb_client import KeyDBClient

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SEC = 1800


class SessionCache(ABC):
    """Interface for a string-keyed, string-valued store with expiry."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value for key, or None on miss."""
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_sec: int | None = None) -> None:
        """Store value under key for ttl_sec seconds (None = backend default)."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key if present."""
        ...

    def close(self) -> None:
        return None


class NullSessionCache(SessionCache):
    """Never persists anything."""

    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_sec: int | None = None) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


class FileSessionCache(SessionCache):
    """
    One JSON file per key under a directory: {"value": str, "expires_at": float}.
    """

    def __init__(self, directory: str | Path, ttl_sec: int = DEFAULT_SESSION_TTL_SEC) -> None:
        self._dir = Path(directory)
        self._ttl = max(1, int(ttl_sec))

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return self._dir / f"{safe}-{digest}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Failed to read session cache %s: %s", path, e)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("value"), str):
            logger.debug("Ignoring malformed session cache entry %s", path)
            return None
        expires_at = data.get("expires_at")
        if isinstance(expires_at, (int, float)) and expires_at < time.time():
            logger.debug("Session cache entry %s expired", key)
            self.delete(key)
            return None
        return data["value"]

    def set(self, key: str, value: str, ttl_sec: int | None = None) -> None:
        ttl = self._ttl if ttl_sec is None else max(1, int(ttl_sec))
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(
                json.dumps({"value": value, "expires_at": time.time() + ttl}),
                encoding="utf-8",
            )
            tmp.replace(path)
        except OSError as e:
            logger.warning("Failed to save session cache %s: %s", path, e)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete session cache %s: %s", key, e)


class KeyDBSessionCache(SessionCache):
    """Session cache on KeyDB/Redis, using native key expiry."""

    def __init__(self, client: KeyDBClient, ttl_sec: int = DEFAULT_SESSION_TTL_SEC) -> None:
        self._client = client
        self._ttl = max(1, int(ttl_sec))

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_sec: int | None = None) -> None:
        ttl = self._ttl if ttl_sec is None else max(1, int(ttl_sec))
        if not self._client.set(key, value, ex=ttl):
            logger.debug("KeyDB did not store session key %s", key)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def close(self) -> None:
        self._client.close()
