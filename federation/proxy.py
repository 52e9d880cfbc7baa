"""
Lazy call-through wrapper over a remote function module.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from federation.errors import FunctionNotFound
from federation.resolver import get_export

logger = logging.getLogger(__name__)

ModuleLoader = Callable[[], Awaitable[Any]]
RemoteCallable = Callable[..., Awaitable[Any]]


class FunctionProxy:
    """
    Resolves its backing module on first use (once, memoized) and dispatches calls
    to the like-named export.

    Use call(name, *args) or bind(name) for an async callable; proxy[name] is bind(name).
    A failed resolution is not memoized, so the next call tries again.
    """

    def __init__(self, remote_name: str, module_path: str, loader: ModuleLoader) -> None:
        """
        Args:
            remote_name: Logical remote name (for error messages)
            module_path: Module path inside the remote
            loader: Async callable returning the module's exports
        """
        self._remote_name = remote_name
        self._module_path = module_path
        self._loader = loader
        self._module: asyncio.Task | None = None

    @property
    def remote_name(self) -> str:
        return self._remote_name

    @property
    def module_path(self) -> str:
        return self._module_path

    async def module(self) -> Any:
        """Return the backing module's exports, resolving them on first use."""
        if self._module is None:
            self._module = asyncio.ensure_future(self._loader())
        task = self._module
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._module is task and task.done():
                self._module = None
            raise

    async def call(self, function_name: str, *args: Any, **kwargs: Any) -> Any:
        """
        Call the named export with args, awaiting it if it returns an awaitable.

        Raises:
            FunctionNotFound: If the export is absent or not callable
        """
        exports = await self.module()
        func = get_export(exports, function_name)
        if func is None or not callable(func):
            raise FunctionNotFound(self._remote_name, self._module_path, function_name)
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def bind(self, function_name: str) -> RemoteCallable:
        """Return an async callable forwarding to the named export."""

        async def remote_call(*args: Any, **kwargs: Any) -> Any:
            return await self.call(function_name, *args, **kwargs)

        remote_call.__name__ = function_name
        remote_call.__qualname__ = f"{self._remote_name}:{self._module_path}.{function_name}"
        return remote_call

    def __getitem__(self, function_name: str) -> RemoteCallable:
        return self.bind(function_name)

    def __repr__(self) -> str:
        return f"FunctionProxy({self._remote_name!r}, {self._module_path!r})"
