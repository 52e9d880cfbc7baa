"""
Fetchers for remote entry sources: HTTP(S) via httpx, file:// and plain paths from disk.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "federation-runtime/1.0"

# Bare hex digests are matched by length.
_HEX_ALGORITHMS = {32: "md5", 40: "sha1", 64: "sha256"}
_SRI_ALGORITHMS = ("sha256", "sha384", "sha512")


class ScriptFetcher(ABC):
    """Interface for retrieving a remote entry's source text."""

    @abstractmethod
    async def fetch(self, url: str) -> str:
        """Return the source at url. Raise on network failure or non-2xx."""
        ...

    async def aclose(self) -> None:
        """Release any held connections."""
        return None


class HttpScriptFetcher(ScriptFetcher):
    """Fetches entry sources over HTTP(S) with httpx; reads file:// URLs and bare paths from disk."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_sec: float = 30.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_sec,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
        )

    async def fetch(self, url: str) -> str:
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            path = Path(unquote(parsed.path) if parsed.scheme == "file" else url)
            logger.debug("Reading remote entry from %s", path)
            return path.read_text(encoding="utf-8")
        response = await self._client.get(url)
        response.raise_for_status()
        return response.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def verify_integrity(source: str, integrity: str | None) -> bool:
    """
    Check source against an integrity value.

    Accepts SRI form ("sha384-<base64>", space-separated alternatives allowed) or a
    bare hex digest (md5, sha1 or sha256 picked by length). An empty or unrecognized
    value is treated as "nothing to verify".
    """
    if not integrity or not integrity.strip():
        return True
    data = source.encode("utf-8")
    tokens = integrity.split()
    for token in tokens:
        algo, sep, expected = token.partition("-")
        if sep and algo.lower() in _SRI_ALGORITHMS:
            actual = base64.b64encode(hashlib.new(algo.lower(), data).digest()).decode()
            if hmac.compare_digest(actual, expected):
                return True
            continue
        hex_algo = _HEX_ALGORITHMS.get(len(token))
        if hex_algo is None:
            logger.debug("Unrecognized integrity token ignored: %s", token)
            continue
        actual = hashlib.new(hex_algo, data).hexdigest()
        if hmac.compare_digest(actual, token.lower()):
            return True
    recognized = any(
        t.partition("-")[0].lower() in _SRI_ALGORITHMS or len(t) in _HEX_ALGORITHMS
        for t in tokens
    )
    return not recognized
