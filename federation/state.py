"""
Observable load state machine shared by script loading and container loading.

States: IDLE -> LOADING(attempt=k) -> READY | LOADING(k+1) | FAILED.
Every transition is published to subscribers so a presentation layer can react
to status and attempt count (e.g. offer a "retry" action after FAILED).
A session that has been superseded by start() for a new target can no longer
mutate the state; its late completions are discarded.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from federation.errors import LoadSuperseded
from federation.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoadStatus(Enum):
    """Load session states."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadAttemptState:
    """Read-only snapshot of one resource's load progress."""

    status: LoadStatus = LoadStatus.IDLE
    attempt: int = 0
    last_error: BaseException | None = None
    target: str | None = None

    @property
    def ready(self) -> bool:
        return self.status is LoadStatus.READY

    @property
    def failed(self) -> bool:
        return self.status is LoadStatus.FAILED

    @property
    def loading(self) -> bool:
        return self.status is LoadStatus.LOADING

    def as_dict(self) -> dict[str, Any]:
        """Status payload for the presentation layer."""
        return {
            "status": self.status.value,
            "ready": self.ready,
            "failed": self.failed,
            "loading": self.loading,
            "attempt": self.attempt,
            "error": str(self.last_error) if self.last_error is not None else None,
            "target": self.target,
        }


@dataclass(frozen=True)
class LoadSession:
    """Identity of one load session; used as a cancellation token."""

    target: str
    session_id: int


StateListener = Callable[[LoadAttemptState], None]

_session_ids = itertools.count(1)


class LoadStateMachine:
    """
    Retry/backoff state machine for one resource (a script URL or a container scope).
    Not thread-safe; intended for a single asyncio event loop.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        name: str = "load",
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        """
        Args:
            policy: Attempt limit and backoff (defaults to RetryPolicy())
            name: Name for logging
            sleep: Awaitable sleep used between attempts (defaults to asyncio.sleep)
        """
        self._policy = policy or RetryPolicy()
        self._name = name
        self._sleep = sleep or asyncio.sleep
        self._state = LoadAttemptState()
        self._session: LoadSession | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> LoadAttemptState:
        return self._state

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @policy.setter
    def policy(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for every transition. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: LoadAttemptState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("%s: state listener failed", self._name)

    def is_current(self, session: LoadSession) -> bool:
        return self._session == session

    def start(self, target: str) -> LoadSession:
        """Begin a new session at attempt 1. Any session still in flight is superseded."""
        if self._session is not None and self._state.loading:
            logger.debug(
                "%s: superseding session %d for %s",
                self._name,
                self._session.session_id,
                self._session.target,
            )
        session = LoadSession(target=target, session_id=next(_session_ids))
        self._session = session
        self._publish(LoadAttemptState(LoadStatus.LOADING, 1, None, target))
        return session

    def succeed(self, session: LoadSession) -> bool:
        """LOADING -> READY. Returns False (and changes nothing) for a stale session."""
        if not self.is_current(session) or not self._state.loading:
            return False
        self._publish(replace(self._state, status=LoadStatus.READY, last_error=None))
        return True

    def fail(
        self, session: LoadSession, error: BaseException, retryable: bool = True
    ) -> bool:
        """
        Record a failed attempt. Returns True if another attempt will follow,
        False if the session is now FAILED or stale.
        """
        if not self.is_current(session) or not self._state.loading:
            return False
        attempt = self._state.attempt
        if retryable and self._policy.has_attempts_left(attempt):
            self._publish(replace(self._state, last_error=error))
            return True
        self._publish(replace(self._state, status=LoadStatus.FAILED, last_error=error))
        return False

    def advance(self, session: LoadSession) -> bool:
        """LOADING(k) -> LOADING(k+1) after the backoff delay. False for a stale session."""
        if not self.is_current(session) or not self._state.loading:
            return False
        self._publish(replace(self._state, attempt=self._state.attempt + 1))
        return True

    def track(
        self, session: LoadSession, attempt: int, error: BaseException | None
    ) -> bool:
        """
        Mirror progress reported by an inner load (attempt count, last error) while
        this session is LOADING. False for a stale session.
        """
        if not self.is_current(session) or not self._state.loading:
            return False
        if attempt == self._state.attempt and error is self._state.last_error:
            return True
        self._publish(replace(self._state, attempt=max(1, attempt), last_error=error))
        return True

    def reset(self) -> None:
        """Return to IDLE and drop the current session."""
        self._session = None
        self._publish(LoadAttemptState())

    async def run(
        self,
        target: str,
        operation: Callable[[int], Awaitable[T]],
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """
        Run operation(attempt) until it succeeds or attempts are exhausted.

        Args:
            target: Resource identity for this session (e.g. the script URL)
            operation: Async callable taking the 1-based attempt number
            should_retry: Optional predicate; defaults to RetryPolicy.is_retryable

        Returns:
            The operation result

        Raises:
            The last attempt's exception once the session is FAILED, or
            LoadSuperseded if start() was called for another session meanwhile.
        """
        should_retry = should_retry or self._policy.is_retryable
        session = self.start(target)
        while True:
            attempt = self._state.attempt
            try:
                result = await operation(attempt)
            except Exception as e:
                if not self.is_current(session):
                    raise LoadSuperseded(target) from e
                if not self.fail(session, e, retryable=should_retry(e)):
                    logger.error(
                        "%s: giving up on %s after %d attempt(s): %s",
                        self._name,
                        target,
                        attempt,
                        e,
                    )
                    raise
                delay = self._policy.delay(attempt)
                logger.warning(
                    "%s: attempt %d/%d for %s failed, retrying in %.2fs: %s",
                    self._name,
                    attempt,
                    self._policy.max_attempts,
                    target,
                    delay,
                    e,
                )
                await self._sleep(delay)
                if not self.advance(session):
                    raise LoadSuperseded(target) from e
                continue
            if not self.succeed(session):
                raise LoadSuperseded(target)
            return result
