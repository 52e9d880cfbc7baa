"""
MicroApp: one mounted remote module with an observable load status.

Runs discovery -> container load -> module resolution and reports progress as a
LoadAttemptState for the presentation layer. Failures end in FAILED with the
error attached; they are never raised to the renderer.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from federation.errors import RemoteNotFound
from federation.retry import RetryPolicy
from federation.state import (
    LoadAttemptState,
    LoadSession,
    LoadStateMachine,
    StateListener,
)

if TYPE_CHECKING:
    from federation.runtime import FederationRuntime

logger = logging.getLogger(__name__)


class MicroApp:
    """
    A logical remote name plus the module to mount from it.
    """

    def __init__(
        self, runtime: FederationRuntime, name: str, module: str | None = None
    ) -> None:
        self._runtime = runtime
        self._name = name
        self._module = module or name
        # Retries happen inside the container loader; this machine mirrors them.
        self._machine = LoadStateMachine(
            RetryPolicy(max_attempts=1), name=f"micro-app:{name}"
        )
        self._exports: Any = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def module(self) -> str:
        return self._module

    @property
    def target(self) -> str:
        return f"{self._name}:{self._module}"

    @property
    def state(self) -> LoadAttemptState:
        return self._machine.state

    @property
    def exports(self) -> Any:
        """Resolved module exports once READY, else None."""
        return self._exports if self._machine.state.ready else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self._machine.subscribe(listener)

    async def load(self) -> Any:
        """
        Start a new load session for the current target.

        Returns:
            The module exports, or None if the session failed or was superseded.
        """
        session = self._machine.start(self.target)
        self._exports = None
        try:
            exports = await self._load(session)
        except Exception as e:
            # Every failure, including a raw one from remote code, ends as FAILED.
            if self._machine.is_current(session):
                logger.error("Micro app %s failed to load: %s", session.target, e)
            self._machine.fail(session, e, retryable=False)
            return None
        if not self._machine.succeed(session):
            logger.debug("Discarding stale load result for %s", session.target)
            return None
        self._exports = exports
        return exports

    async def _load(self, session: LoadSession) -> Any:
        runtime = self._runtime
        location = await runtime.discovery.resolve(self._name, self._module)
        if location is None:
            raise RemoteNotFound(self._name)

        container_machine = runtime.loader.state_machine(location.scope)

        def mirror(state: LoadAttemptState) -> None:
            if state.loading:
                self._machine.track(session, state.attempt, state.last_error)

        unsubscribe = container_machine.subscribe(mirror)
        try:
            handle = await runtime.load_container(location)
        finally:
            unsubscribe()
        return await runtime.resolver.resolve(handle, location.module)

    async def retry(self) -> Any:
        """Start a brand-new load session for the same target."""
        return await self.load()

    async def retarget(self, name: str, module: str | None = None) -> Any:
        """Switch to another remote/module; completions of the old session are discarded."""
        self._name = name
        self._module = module or name
        return await self.load()

    def __repr__(self) -> str:
        return f"MicroApp({self.target!r}, status={self.state.status.value})"
