"""
FederationRuntime: composition root for discovery, container loading, and module resolution.

One runtime owns its HostGlobals, script host, container registry, resolver cache,
and share scope, so independent runtimes do not see each other's remotes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from federation.container import ContainerHandle, ContainerRegistry, ShareScope
from federation.errors import FederationError, RemoteNotFound
from federation.fetcher import HttpScriptFetcher, ScriptFetcher
from federation.loader import ContainerLoader, LoadOptions
from federation.micro_app import MicroApp
from federation.proxy import FunctionProxy
from federation.resolver import ModuleResolver, format_cache_key
from federation.scripts import HostGlobals, ScriptHost
from persistence.keydb_client import KeyDBClient
from persistence.session_cache import (
    FileSessionCache,
    KeyDBSessionCache,
    NullSessionCache,
    SessionCache,
)
from sdk.config import get_federation_section
from sdk.discovery import DiscoveryClient, RemoteLocation, load_manifest_file

logger = logging.getLogger(__name__)

RemoteLoader = Callable[[], Awaitable[ContainerHandle]]


class FederationRuntime:
    """
    Loads remotes discovered by a DiscoveryClient and resolves their modules.
    """

    def __init__(
        self,
        discovery: DiscoveryClient,
        fetcher: ScriptFetcher | None = None,
        load_options: LoadOptions | None = None,
        share_scope: ShareScope | None = None,
        static_remotes: dict[str, str] | None = None,
        verify_integrity: bool = False,
    ) -> None:
        """
        Args:
            discovery: Resolves logical remote names to locations
            fetcher: Source fetcher for remote entries (defaults to HttpScriptFetcher)
            load_options: Default timeout/retry settings for container loads
            share_scope: Shared-dependency scope passed to containers' init()
            static_remotes: Remotes declared up front, scope -> entry URL
            verify_integrity: Check entry sources against manifest integrity values
        """
        self._discovery = discovery
        options = load_options or LoadOptions()
        self._fetcher = fetcher or HttpScriptFetcher(timeout_sec=options.timeout_sec)
        self._host_globals = HostGlobals()
        self._scripts = ScriptHost(self._fetcher, self._host_globals, verify_integrity)
        self._registry = ContainerRegistry()
        self._loader = ContainerLoader(self._scripts, self._registry, options)
        self._resolver = ModuleResolver(share_scope)
        self._static_remotes = dict(static_remotes or {})
        # "app_name:module_path" -> resolver cache key
        self._cache_aliases: dict[str, tuple[str, str]] = {}

    @property
    def discovery(self) -> DiscoveryClient:
        return self._discovery

    @property
    def host_globals(self) -> HostGlobals:
        return self._host_globals

    @property
    def scripts(self) -> ScriptHost:
        return self._scripts

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    @property
    def loader(self) -> ContainerLoader:
        return self._loader

    @property
    def resolver(self) -> ModuleResolver:
        return self._resolver

    async def locate(self, name: str, module_path: str | None = None) -> RemoteLocation:
        """
        Raises:
            RemoteNotFound: If name is not in the manifest
        """
        location = await self._discovery.resolve(name, module_path)
        if location is None:
            raise RemoteNotFound(name)
        return location

    async def load_container(self, location: RemoteLocation) -> ContainerHandle:
        options = self._loader.default_options
        if location.integrity:
            options = replace(options, integrity=location.integrity)
        return await self._loader.load(location.scope, location.url, options)

    async def load_remote_functions(
        self, app_name: str, module_path: str, use_cache: bool = True
    ) -> Any:
        """
        Load a remote's module (component or function library) and return its exports.

        Raises:
            RemoteNotFound: app_name is not in the manifest
            RemoteUnavailable / LoadTimeout: the entry could not be loaded
            InvalidContainer: the entry loaded but exposes no container
            ModuleNotFound: the container has no such module
        """
        try:
            location = await self.locate(app_name, module_path)
            logger.debug("Loading remote functions from %s%s", app_name, module_path)
            handle = await self.load_container(location)
            exports = await self._resolver.resolve(handle, module_path, use_cache)
        except FederationError as e:
            logger.error(
                "Failed to load remote functions from %s%s: %s", app_name, module_path, e
            )
            raise
        if use_cache:
            self._cache_aliases[f"{app_name}:{module_path}"] = (handle.scope, module_path)
        return exports

    load_remote_module = load_remote_functions

    async def load_remote_function(
        self,
        app_name: str,
        module_path: str,
        function_name: str,
        use_cache: bool = True,
    ) -> Any:
        """
        Raises:
            FunctionNotFound: The module has no export named function_name
        """
        location = await self.locate(app_name, module_path)
        handle = await self.load_container(location)
        value = await self._resolver.resolve_function(
            handle, module_path, function_name, use_cache
        )
        if use_cache:
            self._cache_aliases[f"{app_name}:{module_path}"] = (handle.scope, module_path)
        return value

    async def preload_remote_functions(
        self, modules: Iterable[tuple[str, str]]
    ) -> list[Any]:
        """
        Load several (app_name, module_path) pairs concurrently.

        Returns:
            Exports per pair in order, None where loading failed. One failing
            remote does not affect the others.
        """
        modules = list(modules)

        async def preload(app_name: str, module_path: str) -> Any:
            try:
                return await self.load_remote_functions(app_name, module_path)
            except FederationError as e:
                logger.warning("Failed to preload %s%s: %s", app_name, module_path, e)
                return None

        results = await asyncio.gather(*(preload(a, m) for a, m in modules))
        loaded = sum(1 for r in results if r is not None)
        logger.info("Preloaded %d/%d remote function modules", loaded, len(modules))
        return list(results)

    def clear_function_cache(self, cache_key: str | None = None) -> None:
        """
        Clear one cached module ("app_name:module_path") or all of them.
        """
        if cache_key is None:
            self._resolver.clear_cache()
            self._cache_aliases.clear()
            return
        key = self._cache_aliases.pop(cache_key, None)
        if key is None:
            logger.debug("No cached module for %s", cache_key)
            return
        self._resolver.clear_cache(*key)

    def cached_modules(self) -> list[str]:
        """Keys ("app_name:module_path") of modules currently cached."""
        return [
            alias
            for alias, (scope, module_path) in self._cache_aliases.items()
            if self._resolver.is_cached(scope, module_path)
        ]

    def create_function_proxy(self, app_name: str, module_path: str) -> FunctionProxy:
        return FunctionProxy(
            app_name,
            module_path,
            lambda: self.load_remote_functions(app_name, module_path),
        )

    def remote_loader(
        self, scope: str, url: str | None = None, delay_sec: float = 0.0
    ) -> RemoteLoader:
        """
        Build an async loader for a remote declared up front (scope -> url).

        Args:
            scope: Container scope name
            url: Entry URL; defaults to the configured static remote for scope
            delay_sec: Wait before resolving (simulates slow remotes in testing)
        """
        url = url or self._static_remotes.get(scope)
        if not url:
            raise ValueError(f"No entry URL configured for remote scope {scope}")

        async def load() -> ContainerHandle:
            if delay_sec > 0:
                logger.info(
                    "Delaying remote module resolution for testing: %s %.2fs",
                    scope,
                    delay_sec,
                )
                await asyncio.sleep(delay_sec)
            return await self._loader.load(scope, url)

        return load

    @property
    def remotes(self) -> dict[str, RemoteLoader]:
        """Loaders for all statically configured remotes."""
        return {scope: self.remote_loader(scope) for scope in self._static_remotes}

    def micro_app(self, name: str, module: str | None = None) -> MicroApp:
        return MicroApp(self, name, module)

    async def aclose(self) -> None:
        await self._fetcher.aclose()
        await self._discovery.aclose()


def build_session_cache(section: dict[str, Any]) -> SessionCache:
    """Session cache for a normalized session_cache section."""
    backend = section["backend"]
    if backend == "keydb":
        client = KeyDBClient(host=section["keydb_host"], port=section["keydb_port"])
        return KeyDBSessionCache(client, ttl_sec=section["ttl_sec"])
    if backend == "file":
        return FileSessionCache(section["path"], ttl_sec=section["ttl_sec"])
    return NullSessionCache()


def build_runtime(
    raw_config: dict[str, Any], fetcher: ScriptFetcher | None = None
) -> FederationRuntime:
    """Wire a FederationRuntime from raw config (see sdk.config.get_federation_section)."""
    cfg = get_federation_section(raw_config)
    discovery_cfg = cfg["discovery"]
    loader_cfg = cfg["loader"]
    cache_cfg = cfg["session_cache"]

    fallback = None
    if discovery_cfg["fallback_manifest"]:
        fallback = load_manifest_file(Path(discovery_cfg["fallback_manifest"])) or None
        if fallback is None:
            logger.warning(
                "Fallback manifest %s unusable, using bundled manifest",
                discovery_cfg["fallback_manifest"],
            )

    discovery = DiscoveryClient(
        endpoint=discovery_cfg["endpoint"],
        fallback_manifest=fallback,
        session_cache=build_session_cache(cache_cfg),
        cache_key=cache_cfg["key"],
        timeout_sec=discovery_cfg["timeout_sec"],
        headers=discovery_cfg["headers"] or None,
    )
    options = LoadOptions(
        timeout_sec=loader_cfg["timeout_sec"],
        max_retries=loader_cfg["max_retries"],
        backoff_sec=loader_cfg["backoff_sec"],
    )
    return FederationRuntime(
        discovery,
        fetcher=fetcher,
        load_options=options,
        static_remotes=cfg["remotes"],
        verify_integrity=loader_cfg["verify_integrity"],
    )
