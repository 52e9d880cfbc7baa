"""
Module resolution: container.get(path) -> factory() -> exports, cached per (scope, path).

A factory may have side effects, so it runs at most once per cache key and cache
generation: concurrent resolutions of a key join the first in-flight one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from federation.container import ContainerHandle, ShareScope
from federation.errors import FunctionNotFound, ModuleNotFound

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


def format_cache_key(key: CacheKey) -> str:
    return f"{key[0]}:{key[1]}"


def get_export(exports: Any, name: str) -> Any:
    """Look up an export by name on a mapping or attribute namespace; None if absent."""
    if isinstance(exports, Mapping):
        return exports.get(name)
    return getattr(exports, name, None)


class ModuleResolver:
    """
    Resolves exported modules from loaded containers with per-key caching.
    """

    def __init__(self, share_scope: ShareScope | None = None) -> None:
        """
        Args:
            share_scope: Shared-dependency scope passed to each container's init()
        """
        self._share_scope: ShareScope = share_scope if share_scope is not None else {}
        self._cache: dict[CacheKey, Any] = {}
        self._pending: dict[CacheKey, asyncio.Task] = {}
        self._epoch = 0
        self._generations: dict[CacheKey, int] = {}

    @property
    def share_scope(self) -> ShareScope:
        return self._share_scope

    async def resolve(
        self, handle: ContainerHandle, module_path: str, use_cache: bool = True
    ) -> Any:
        """
        Return the exports of module_path from handle's container.

        Raises:
            ModuleNotFound: If the container cannot produce the module
        """
        key: CacheKey = (handle.scope, module_path)
        if use_cache and key in self._cache:
            logger.debug("Using cached remote module %s", format_cache_key(key))
            return self._cache[key]

        pending = self._pending.get(key)
        if pending is None:
            generation = self._generation_of(key)
            pending = asyncio.ensure_future(
                self._materialize(handle, module_path, key, use_cache, generation)
            )
            self._pending[key] = pending
            pending.add_done_callback(lambda task: self._resolution_done(key, task))
        else:
            logger.debug("Joining in-flight resolution of %s", format_cache_key(key))
        return await asyncio.shield(pending)

    def _resolution_done(self, key: CacheKey, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()

    async def _materialize(
        self,
        handle: ContainerHandle,
        module_path: str,
        key: CacheKey,
        use_cache: bool,
        generation: tuple[int, int],
    ) -> Any:
        if not handle.initialized:
            await handle.init(self._share_scope)
        factory = await handle.get(module_path)
        try:
            exports = factory()
        except Exception as e:
            logger.error(
                "Remote module factory failed: %s: %s", format_cache_key(key), e
            )
            raise ModuleNotFound(
                handle.scope,
                module_path,
                f"Module {module_path} from remote {handle.scope} failed to initialize: {e}",
            ) from e
        if use_cache and generation == self._generation_of(key):
            self._cache[key] = exports
        logger.info("Resolved remote module %s", format_cache_key(key))
        return exports

    async def resolve_function(
        self,
        handle: ContainerHandle,
        module_path: str,
        function_name: str,
        use_cache: bool = True,
    ) -> Any:
        """
        Return one named export of module_path.

        Raises:
            FunctionNotFound: If the export is absent (a ModuleNotFound)
        """
        exports = await self.resolve(handle, module_path, use_cache=use_cache)
        value = get_export(exports, function_name)
        if value is None:
            raise FunctionNotFound(handle.scope, module_path, function_name)
        return value

    def _generation_of(self, key: CacheKey) -> tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def is_cached(self, scope: str, module_path: str) -> bool:
        return (scope, module_path) in self._cache

    def cached_keys(self) -> list[str]:
        return [format_cache_key(key) for key in self._cache]

    def clear_cache(
        self, scope: str | None = None, module_path: str | None = None
    ) -> None:
        """
        Drop one cache entry, or all of them when scope is None.
        Resolutions requested before the clear do not repopulate the cache,
        whether or not their factory has run yet.
        """
        if scope is None:
            self._cache.clear()
            self._pending.clear()
            self._epoch += 1
            logger.info("Cleared all remote module cache")
            return
        if module_path is None:
            raise ValueError("module_path is required when scope is given")
        key = (scope, module_path)
        self._cache.pop(key, None)
        self._pending.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1
        logger.info("Cleared cache for %s", format_cache_key(key))
