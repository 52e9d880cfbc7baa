"""
Remote container contract, load-time validation, and the verified handle registry.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from federation.errors import InvalidContainer, ModuleNotFound

logger = logging.getLogger(__name__)

ModuleFactory = Callable[[], Any]
ShareScope = dict[str, Any]


@runtime_checkable
class RemoteContainer(Protocol):
    """What a remote entry must register at its scope name."""

    def init(self, share_scope: ShareScope) -> None | Awaitable[None]: ...

    def get(self, request: str) -> ModuleFactory | Awaitable[ModuleFactory]: ...


class ContainerHandle:
    """
    Stable proxy over a verified raw container.

    init() treats a failing negotiation as "already initialized" (a remote that
    already negotiated sharing is in a valid state). get() rethrows underlying
    failures as ModuleNotFound carrying the scope and request.
    """

    def __init__(self, scope: str, container: RemoteContainer) -> None:
        self._scope = scope
        self._container = container
        self._initialized = False

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def raw(self) -> RemoteContainer:
        return self._container

    async def init(self, share_scope: ShareScope) -> None:
        try:
            result = self._container.init(share_scope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.info("Remote container already initialized: %s (%s)", self._scope, e)
        self._initialized = True

    async def get(self, request: str) -> ModuleFactory:
        try:
            factory = self._container.get(request)
            if inspect.isawaitable(factory):
                factory = await factory
        except Exception as e:
            logger.error(
                "Error getting remote module: %s %s: %s", self._scope, request, e
            )
            raise ModuleNotFound(
                self._scope, request, f"Remote {self._scope} cannot provide {request}: {e}"
            ) from e
        if not callable(factory):
            raise ModuleNotFound(
                self._scope,
                request,
                f"Remote {self._scope} returned a non-callable factory for {request}",
            )
        return factory

    def __repr__(self) -> str:
        return f"ContainerHandle(scope={self._scope!r})"


def validate_container(scope: str, container: Any) -> ContainerHandle:
    """
    Check that container exposes callable init and get; wrap it in a ContainerHandle.

    Raises:
        InvalidContainer: If nothing is registered or a required method is missing
    """
    if container is None:
        raise InvalidContainer(
            scope, f"Remote container not available after script load: {scope}"
        )
    missing = [
        name for name in ("init", "get") if not callable(getattr(container, name, None))
    ]
    if missing:
        raise InvalidContainer(
            scope,
            f"Remote container missing required methods ({', '.join(missing)}): {scope}",
        )
    return ContainerHandle(scope, container)


class ContainerRegistry:
    """Verified handles by scope. One handle per scope for the registry's lifetime."""

    def __init__(self) -> None:
        self._handles: dict[str, ContainerHandle] = {}

    def get(self, scope: str) -> ContainerHandle | None:
        return self._handles.get(scope)

    def register(self, handle: ContainerHandle) -> ContainerHandle:
        """Store handle unless one exists for its scope; return the stored handle."""
        existing = self._handles.get(handle.scope)
        if existing is not None:
            return existing
        self._handles[handle.scope] = handle
        return handle

    def scopes(self) -> list[str]:
        return list(self._handles)

    def __contains__(self, scope: object) -> bool:
        return scope in self._handles

    def __len__(self) -> int:
        return len(self._handles)
