"""
Remote discovery: resolve a logical remote name to {url, scope, module}.

The manifest comes from, in order: the in-process copy, the persisted session
cache, the discovery endpoint, and finally a static fallback manifest. Whatever
was used is persisted, so cache-or-fallback stays stable for the session.
At most one discovery fetch is in flight per client; concurrent callers share it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from federation.errors import DiscoveryUnavailable
from persistence.session_cache import NullSessionCache, SessionCache

logger = logging.getLogger(__name__)

MANIFEST_CACHE_KEY = "micro-frontend-data"
DISCOVERY_SCHEMA = (
    "https://raw.githubusercontent.com/awslabs/frontend-discovery/main/schema/v1-pre.json"
)

# Bundled manifest used when no endpoint is configured or reachable.
DEFAULT_MANIFEST: dict[str, Any] = {
    "schema": DISCOVERY_SCHEMA,
    "microFrontends": {
        "my-project/catalog": [
            {
                "url": "http://localhost:3003/remoteEntry.py",
                "metadata": {
                    "version": "1.0.0",
                    "integrity": "e0d123e5f316bef78bfdf5a008837577",
                },
            }
        ],
        "my-project/product": [
            {
                "url": "http://localhost:3002/remoteEntry.py",
                "metadata": {
                    "version": "1.0.0",
                    "integrity": "e0d123e5f316bef78bfdf5a008837578",
                },
            }
        ],
    },
}

_NON_IDENTIFIER = re.compile(r"[^0-9A-Za-z_]")


def derive_scope(name: str, version: str | None = None) -> str:
    """
    Scope (runtime identifier) for a remote: name + "/" + version with every
    non-identifier character replaced by "_".

    Example:
        derive_scope("my-project/catalog", "1.0.0") == "my_project_catalog_1_0_0"
    """
    raw = f"{name}/{version}" if version else name
    scope = _NON_IDENTIFIER.sub("_", raw)
    if not scope or scope[0].isdigit():
        scope = f"_{scope}"
    return scope


@dataclass(frozen=True)
class RemoteMetadata:
    version: str = ""
    integrity: str | None = None


@dataclass(frozen=True)
class RemoteDescriptor:
    """One deployable version of a remote, as listed in the manifest."""

    name: str
    url: str
    scope: str
    metadata: RemoteMetadata = field(default_factory=RemoteMetadata)


@dataclass(frozen=True)
class RemoteLocation:
    """Where to load a remote from and which module to request."""

    url: str
    scope: str
    module: str
    integrity: str | None = field(default=None, compare=False)

    def as_dict(self) -> dict[str, str]:
        return {"url": self.url, "scope": self.scope, "module": self.module}


def _parse_descriptor(name: str, entry: Any) -> RemoteDescriptor | None:
    if not isinstance(entry, Mapping):
        logger.warning("Skipping malformed manifest entry for %s: %r", name, entry)
        return None
    url = entry.get("url")
    if not isinstance(url, str) or not url.strip():
        logger.warning("Skipping manifest entry for %s without url", name)
        return None
    meta = entry.get("metadata") or {}
    if not isinstance(meta, Mapping):
        meta = {}
    version = str(meta.get("version") or "").strip()
    integrity = meta.get("integrity")
    return RemoteDescriptor(
        name=name,
        url=url.strip(),
        scope=derive_scope(name, version),
        metadata=RemoteMetadata(
            version=version,
            integrity=str(integrity) if integrity else None,
        ),
    )


@dataclass(frozen=True)
class DiscoveryManifest:
    """Logical remote name -> descriptors, ordered by preference."""

    schema: str | None
    micro_frontends: dict[str, tuple[RemoteDescriptor, ...]]
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Any) -> DiscoveryManifest:
        """
        Build a manifest from the discovery JSON shape.

        Raises:
            ValueError: If data is not a mapping with a microFrontends mapping
        """
        if not isinstance(data, Mapping):
            raise ValueError("Discovery manifest must be an object")
        entries = data.get("microFrontends")
        if not isinstance(entries, Mapping):
            raise ValueError("Discovery manifest has no microFrontends object")
        remotes: dict[str, tuple[RemoteDescriptor, ...]] = {}
        for name, versions in entries.items():
            if not isinstance(versions, list):
                logger.warning("Skipping remote %s: expected a list of versions", name)
                continue
            parsed = [_parse_descriptor(str(name), entry) for entry in versions]
            descriptors = tuple(d for d in parsed if d is not None)
            if descriptors:
                remotes[str(name)] = descriptors
        schema = data.get("schema")
        return cls(
            schema=str(schema) if schema else None,
            micro_frontends=remotes,
            raw=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.raw:
            return dict(self.raw)
        return {
            "schema": self.schema,
            "microFrontends": {
                name: [
                    {
                        "url": d.url,
                        "metadata": {
                            "version": d.metadata.version,
                            "integrity": d.metadata.integrity,
                        },
                    }
                    for d in descriptors
                ]
                for name, descriptors in self.micro_frontends.items()
            },
        }

    def get(self, name: str) -> tuple[RemoteDescriptor, ...]:
        return self.micro_frontends.get(name, ())

    def names(self) -> list[str]:
        return list(self.micro_frontends)


def load_manifest_file(path: Path) -> dict[str, Any]:
    """Load a manifest from a YAML or JSON file. Returns {} if missing or invalid."""
    from config import load_yaml_file

    data = load_yaml_file(path)
    if not data and path.exists():
        logger.debug("Could not load manifest %s (invalid or empty)", path)
    return data


def _fallback_manifest(data: Mapping[str, Any] | None) -> DiscoveryManifest:
    """Parse a configured fallback manifest; an unusable one is replaced by DEFAULT_MANIFEST."""
    if not data:
        return DiscoveryManifest.from_dict(DEFAULT_MANIFEST)
    try:
        return DiscoveryManifest.from_dict(data)
    except ValueError as e:
        logger.warning("Ignoring fallback manifest, using bundled manifest: %s", e)
        return DiscoveryManifest.from_dict(DEFAULT_MANIFEST)


class DiscoveryClient:
    """
    Resolves logical remote names against a discovered manifest.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        fallback_manifest: Mapping[str, Any] | None = None,
        session_cache: SessionCache | None = None,
        cache_key: str = MANIFEST_CACHE_KEY,
        http_client: httpx.AsyncClient | None = None,
        timeout_sec: float = 10.0,
        headers: dict[str, str] | None = None,
        cookies: dict[str, str] | None = None,
    ) -> None:
        """
        Args:
            endpoint: Discovery endpoint URL; None uses the fallback manifest directly
            fallback_manifest: Static manifest (discovery JSON shape); defaults to DEFAULT_MANIFEST
            session_cache: Persisted cache for the manifest (defaults to no persistence)
            cache_key: Key the manifest is persisted under
            http_client: Pre-built httpx client (owned by the caller)
            timeout_sec: Discovery request timeout
            headers: Extra request headers
            cookies: Credentials sent with the discovery request
        """
        self._endpoint = endpoint.strip() if endpoint and endpoint.strip() else None
        self._fallback = _fallback_manifest(fallback_manifest)
        self._session_cache = session_cache or NullSessionCache()
        self._cache_key = cache_key
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_sec, headers=headers, cookies=cookies
        )
        self._manifest: DiscoveryManifest | None = None
        self._pending: asyncio.Task | None = None
        self._generation = 0
        self._fetch_count = 0

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    @property
    def fetch_count(self) -> int:
        """Number of discovery requests issued by this client."""
        return self._fetch_count

    @property
    def initialized(self) -> bool:
        return self._manifest is not None

    async def manifest(self) -> DiscoveryManifest:
        """Return the manifest, running discovery on first use."""
        if self._manifest is not None:
            return self._manifest
        pending = self._pending
        if pending is None:
            pending = asyncio.ensure_future(self._initialize(self._generation))
            self._pending = pending
            pending.add_done_callback(self._initialize_done)
        return await asyncio.shield(pending)

    def _initialize_done(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None
        if not task.cancelled():
            task.exception()

    async def _initialize(self, generation: int) -> DiscoveryManifest:
        manifest = self._read_cached()
        if manifest is not None:
            logger.info("Using cached remote manifest from session cache")
        else:
            logger.info("Fetching remote manifest from discovery service")
            manifest = await self._discover()
            if generation == self._generation:
                self._write_cached(manifest)
        if generation == self._generation:
            self._manifest = manifest
        return manifest

    def _read_cached(self) -> DiscoveryManifest | None:
        cached = self._session_cache.get(self._cache_key)
        if not cached:
            return None
        try:
            return DiscoveryManifest.from_dict(json.loads(cached))
        except ValueError as e:
            logger.warning("Failed to read remote manifest from session cache: %s", e)
            return None

    def _write_cached(self, manifest: DiscoveryManifest) -> None:
        try:
            self._session_cache.set(self._cache_key, json.dumps(manifest.to_dict()))
        except (TypeError, ValueError) as e:
            logger.warning("Failed to save remote manifest to session cache: %s", e)

    async def _discover(self) -> DiscoveryManifest:
        if self._endpoint is None:
            logger.info("No discovery endpoint provided, using fallback manifest")
            return self._fallback
        try:
            return await self._fetch()
        except DiscoveryUnavailable as e:
            logger.warning(
                "Failed to fetch from discovery endpoint, falling back to static manifest: %s",
                e,
            )
            return self._fallback

    async def _fetch(self) -> DiscoveryManifest:
        self._fetch_count += 1
        try:
            response = await self._client.get(self._endpoint)
            response.raise_for_status()
            return DiscoveryManifest.from_dict(response.json())
        except httpx.HTTPError as e:
            raise DiscoveryUnavailable(self._endpoint, str(e) or repr(e)) from e
        except ValueError as e:
            raise DiscoveryUnavailable(
                self._endpoint, f"Invalid discovery response: {e}"
            ) from e

    async def resolve(
        self, name: str, module_path: str | None = None
    ) -> RemoteLocation | None:
        """
        Resolve a logical remote name to its preferred location.

        Args:
            name: Logical remote name (e.g. "my-project/product")
            module_path: Module to request; defaults to name

        Returns:
            RemoteLocation, or None if name is not in the manifest
        """
        manifest = await self.manifest()
        descriptors = manifest.get(name)
        if not descriptors:
            logger.debug("Remote %s not found in manifest", name)
            return None
        preferred = descriptors[0]
        return RemoteLocation(
            url=preferred.url,
            scope=preferred.scope,
            module=module_path or name,
            integrity=preferred.metadata.integrity,
        )

    def clear_cache(self) -> None:
        """Drop the persisted and in-process manifest; the next resolve rediscovers."""
        self._session_cache.delete(self._cache_key)
        self._manifest = None
        self._pending = None
        self._generation += 1
        logger.info("Remote manifest cache cleared")

    async def refresh(self) -> DiscoveryManifest:
        """Clear the cache and rediscover immediately."""
        self.clear_cache()
        return await self.manifest()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
