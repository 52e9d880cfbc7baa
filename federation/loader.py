"""
Container loader: loads a remote's entry once per scope and returns a verified handle.

Concurrent load() calls for a scope join the single in-flight session. Each session
is driven by the scope's LoadStateMachine: a network failure or timeout removes the
injected tag and retries after backoff_sec * attempt; a structurally unusable
container fails immediately. A failed session leaves nothing cached for the scope.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from federation.container import ContainerHandle, ContainerRegistry, validate_container
from federation.errors import InvalidContainer, LoadTimeout, RemoteUnavailable
from federation.retry import RetryPolicy
from federation.scripts import ScriptHost, ScriptTag
from federation.state import LoadAttemptState, LoadStateMachine

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SEC = 1.0


@dataclass(frozen=True)
class LoadOptions:
    """Per-load timeout and retry settings."""

    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_sec: float = DEFAULT_BACKOFF_SEC
    integrity: str | None = None

    def policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_retries, backoff_sec=self.backoff_sec)


class ContainerLoader:
    """
    Loads remote containers into a ScriptHost and keeps verified handles in a registry.
    """

    def __init__(
        self,
        scripts: ScriptHost,
        registry: ContainerRegistry | None = None,
        default_options: LoadOptions | None = None,
    ) -> None:
        """
        Args:
            scripts: Script host that fetches and executes entries
            registry: Registry of verified handles (shared with other runtime parts)
            default_options: Options used when load() is called without any
        """
        self._scripts = scripts
        self._registry = registry if registry is not None else ContainerRegistry()
        self._defaults = default_options or LoadOptions()
        self._pending: dict[str, asyncio.Task] = {}
        self._pending_urls: dict[str, str] = {}
        self._machines: dict[str, LoadStateMachine] = {}

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    @property
    def default_options(self) -> LoadOptions:
        return self._defaults

    def state(self, scope: str) -> LoadAttemptState:
        """Current load state for scope (IDLE if never loaded)."""
        machine = self._machines.get(scope)
        return machine.state if machine is not None else LoadAttemptState()

    def state_machine(self, scope: str) -> LoadStateMachine:
        """State machine for scope, created on first use; subscribe to observe transitions."""
        machine = self._machines.get(scope)
        if machine is None:
            machine = LoadStateMachine(
                self._defaults.policy(), name=f"container:{scope}"
            )
            self._machines[scope] = machine
        return machine

    async def load(
        self, scope: str, url: str, options: LoadOptions | None = None
    ) -> ContainerHandle:
        """
        Return the handle for scope, loading url if no verified handle exists.

        Raises:
            LoadTimeout: Last attempt timed out
            RemoteUnavailable: Entry could not be fetched within the retry budget
            InvalidContainer: Entry loaded but exposes no usable container
        """
        handle = self._registry.get(scope)
        if handle is not None:
            logger.debug("Container %s already loaded", scope)
            return handle

        pending = self._pending.get(scope)
        if pending is None:
            pending = asyncio.ensure_future(
                self._load_session(scope, url, options or self._defaults)
            )
            self._pending[scope] = pending
            self._pending_urls[scope] = url
            pending.add_done_callback(lambda task: self._session_done(scope, task))
        elif self._pending_urls.get(scope) != url:
            logger.warning(
                "Load of %s from %s joins the in-flight load from %s",
                scope,
                url,
                self._pending_urls.get(scope),
            )
        else:
            logger.debug("Joining in-flight load for %s", scope)
        return await asyncio.shield(pending)

    def _session_done(self, scope: str, task: asyncio.Task) -> None:
        if self._pending.get(scope) is task:
            del self._pending[scope]
            self._pending_urls.pop(scope, None)
        if not task.cancelled():
            # Mark retrieved; joiners observe the exception themselves.
            task.exception()

    async def _load_session(
        self, scope: str, url: str, options: LoadOptions
    ) -> ContainerHandle:
        machine = self.state_machine(scope)
        machine.policy = options.policy()

        async def attempt(number: int) -> ContainerHandle:
            return await self._attempt(scope, url, options, number)

        handle = await machine.run(url, attempt)
        return self._registry.register(handle)

    async def _attempt(
        self, scope: str, url: str, options: LoadOptions, attempt: int
    ) -> ContainerHandle:
        host_globals = self._scripts.host_globals

        # Entry already executed for this scope (e.g. by another runtime part)
        existing = self._scripts.find(scope=scope)
        if existing is not None and scope in host_globals:
            logger.debug("Reusing loaded entry %s for %s", existing.url, scope)
            return validate_container(scope, host_globals.get(scope))

        tag = self._scripts.inject(url, scope, integrity=options.integrity)
        try:
            await asyncio.wait_for(asyncio.shield(tag.completion), options.timeout_sec)
        except asyncio.TimeoutError:
            logger.error("Remote module load timeout: %s %s", scope, url)
            self._scripts.remove(tag)
            raise LoadTimeout(scope, url, options.timeout_sec, attempt) from None
        except RemoteUnavailable as e:
            self._scripts.remove(tag)
            e.attempt = attempt
            raise
        except BaseException:
            # Invalid entries, unexpected errors and cancellation all detach the tag.
            self._scripts.remove(tag)
            raise

        return self._verify(scope, tag)

    def _verify(self, scope: str, tag: ScriptTag) -> ContainerHandle:
        host_globals = self._scripts.host_globals
        try:
            handle = validate_container(scope, host_globals.get(scope))
        except InvalidContainer as e:
            logger.error("%s", e)
            self._scripts.remove(tag)
            host_globals.pop(scope, None)
            raise
        logger.info("Remote container loaded successfully: %s", scope)
        return handle
