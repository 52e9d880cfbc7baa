"""
Error taxonomy for remote discovery, container loading, and module resolution.

Transient network-class errors (RemoteUnavailable, LoadTimeout) are retried by the
loader before they surface. Structural errors (InvalidContainer, ModuleNotFound,
FunctionNotFound) surface immediately.
"""

from __future__ import annotations


class FederationError(Exception):
    """Base exception for all remote runtime errors."""

    pass


class DiscoveryUnavailable(FederationError):
    """Raised when the discovery endpoint cannot be fetched or parsed. Recovered via fallback."""

    def __init__(self, endpoint: str | None, message: str) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class RemoteNotFound(FederationError):
    """Raised when a logical remote name is absent from the discovered manifest."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Remote not found in manifest: {name}")
        self.name = name


class RemoteUnavailable(FederationError):
    """Raised when a remote entry could not be loaded (network failure, non-2xx)."""

    def __init__(self, scope: str, url: str, message: str, attempt: int = 0) -> None:
        super().__init__(message)
        self.scope = scope
        self.url = url
        self.attempt = attempt


class LoadTimeout(RemoteUnavailable):
    """Raised when a remote entry did not finish loading within the timeout."""

    def __init__(
        self, scope: str, url: str, timeout_sec: float, attempt: int = 0
    ) -> None:
        super().__init__(
            scope,
            url,
            f"Remote module load timeout: {scope} ({url}, {timeout_sec:.3f}s)",
            attempt,
        )
        self.timeout_sec = timeout_sec


class InvalidContainer(FederationError):
    """Raised when a remote entry loaded but does not expose a usable container. Never retried."""

    def __init__(self, scope: str, message: str) -> None:
        super().__init__(message)
        self.scope = scope


class ModuleNotFound(FederationError, LookupError):
    """Raised when a container cannot produce the requested module or export."""

    def __init__(self, scope: str, request: str, message: str | None = None) -> None:
        super().__init__(message or f"Module {request} not found in remote {scope}")
        self.scope = scope
        self.request = request


class FunctionNotFound(ModuleNotFound):
    """Raised when a resolved module has no callable export with the requested name."""

    def __init__(self, scope: str, request: str, function_name: str) -> None:
        super().__init__(
            scope,
            request,
            f"Function {function_name} does not exist or is not callable in {scope}:{request}",
        )
        self.function_name = function_name


class LoadSuperseded(FederationError):
    """Raised to the caller of a load session whose target changed before it completed."""

    def __init__(self, target: str) -> None:
        super().__init__(f"Load session for {target} was superseded")
        self.target = target
