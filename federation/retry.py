"""
Retry policy with linear backoff for remote entry loading.
"""

from __future__ import annotations

import logging

from federation.errors import InvalidContainer, ModuleNotFound, RemoteUnavailable

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Retry policy with linear backoff: the wait after attempt k is backoff_sec * k.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_sec: float = 1.0,
        max_delay_sec: float = 60.0,
    ) -> None:
        """
        Args:
            max_attempts: Total number of attempts per load session (at least 1)
            backoff_sec: Base delay; the wait after attempt k is backoff_sec * k
            max_delay_sec: Upper bound for a single wait
        """
        self._max_attempts = max(1, int(max_attempts))
        self._backoff = max(0.0, float(backoff_sec))
        self._max_delay = max(self._backoff, float(max_delay_sec))

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def backoff_sec(self) -> float:
        return self._backoff

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self._backoff * max(1, attempt), self._max_delay)

    def has_attempts_left(self, attempt: int) -> bool:
        """True if another attempt may follow the given (1-based) attempt."""
        return attempt < self._max_attempts

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        """
        Transient, network-class failures are retried; structural failures are not.

        A remote that loaded but exposes no usable container signals a build or
        deployment mismatch, which another attempt cannot fix.
        """
        if isinstance(error, (InvalidContainer, ModuleNotFound)):
            return False
        if isinstance(error, RemoteUnavailable):
            return True
        logger.debug("Not retrying unexpected error: %r", error)
        return False
