"""
Script host: injects remote entry sources into the host process.

A ScriptTag is the record of one injection. Its completion task fetches the
source and executes it in a fresh module namespace that sees the runtime's
HostGlobals as ``host_globals``; a remote entry registers its container with
``host_globals[scope] = container``. Completion resolves on the load event and
raises on the error event. Removing a tag cancels an unfinished completion.
"""

from __future__ import annotations

import asyncio
import logging
import types
from collections import UserDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from federation.errors import InvalidContainer, RemoteUnavailable
from federation.fetcher import ScriptFetcher, verify_integrity

logger = logging.getLogger(__name__)

HOST_GLOBALS_NAME = "host_globals"


class HostGlobals(UserDict):
    """Process-global namespace (scope -> raw container) shared with executed remote entries."""

    pass


class ScriptStatus(Enum):
    PENDING = "pending"
    LOADED = "loaded"
    ERROR = "error"


@dataclass(eq=False)
class ScriptTag:
    """One injected remote entry, marked with the scope that owns it."""

    url: str
    scope: str
    integrity: str | None = None
    status: ScriptStatus = ScriptStatus.PENDING
    module: types.ModuleType | None = None
    completion: asyncio.Task | None = field(default=None, repr=False)

    @property
    def loaded(self) -> bool:
        return self.status is ScriptStatus.LOADED


class ScriptHost:
    """
    Owns injected script tags and the HostGlobals they execute against.
    """

    def __init__(
        self,
        fetcher: ScriptFetcher,
        host_globals: HostGlobals | None = None,
        verify_integrity: bool = False,
    ) -> None:
        """
        Args:
            fetcher: Source fetcher for entry URLs
            host_globals: Namespace entries register their containers in
            verify_integrity: Check fetched sources against the tag's integrity value
        """
        self._fetcher = fetcher
        self._globals = host_globals if host_globals is not None else HostGlobals()
        self._verify_integrity = verify_integrity
        self._tags: list[ScriptTag] = []
        self._injections = 0

    @property
    def host_globals(self) -> HostGlobals:
        return self._globals

    @property
    def tags(self) -> list[ScriptTag]:
        return list(self._tags)

    @property
    def injection_count(self) -> int:
        """Number of injections performed over the host's lifetime."""
        return self._injections

    def find(self, *, scope: str | None = None, url: str | None = None) -> ScriptTag | None:
        """Return the first loaded tag matching scope and/or url, if any."""
        for tag in self._tags:
            if not tag.loaded:
                continue
            if scope is not None and tag.scope != scope:
                continue
            if url is not None and tag.url != url:
                continue
            return tag
        return None

    def inject(self, url: str, scope: str, integrity: str | None = None) -> ScriptTag:
        """Append a tag for url and start loading it. Await tag.completion for the outcome."""
        tag = ScriptTag(url=url, scope=scope, integrity=integrity)
        self._tags.append(tag)
        self._injections += 1
        tag.completion = asyncio.ensure_future(self._load(tag))
        logger.debug("Injected remote entry %s for scope %s", url, scope)
        return tag

    def remove(self, tag: ScriptTag) -> None:
        """Detach a tag; an unfinished load is cancelled."""
        if tag.completion is not None and not tag.completion.done():
            tag.completion.cancel()
        if tag in self._tags:
            self._tags.remove(tag)
            logger.debug("Removed remote entry %s (scope %s)", tag.url, tag.scope)

    async def _load(self, tag: ScriptTag) -> None:
        try:
            source = await self._fetcher.fetch(tag.url)
        except UnicodeDecodeError as e:
            tag.status = ScriptStatus.ERROR
            raise InvalidContainer(
                tag.scope, f"Remote entry {tag.url} is not valid UTF-8 source: {e}"
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as e:
            tag.status = ScriptStatus.ERROR
            raise RemoteUnavailable(
                tag.scope,
                tag.url,
                f"Failed to load remote script: {tag.scope} from {tag.url}: {e}",
            ) from e

        if self._verify_integrity and not verify_integrity(source, tag.integrity):
            tag.status = ScriptStatus.ERROR
            raise InvalidContainer(
                tag.scope, f"Integrity check failed for {tag.url} (scope {tag.scope})"
            )

        module = types.ModuleType(f"remote_entry_{tag.scope}")
        module.__file__ = tag.url
        namespace: dict[str, Any] = module.__dict__
        namespace[HOST_GLOBALS_NAME] = self._globals
        try:
            code = compile(source, tag.url, "exec")
            exec(code, namespace)
        except Exception as e:
            tag.status = ScriptStatus.ERROR
            raise InvalidContainer(
                tag.scope, f"Remote entry {tag.url} failed to execute: {e}"
            ) from e

        tag.module = module
        tag.status = ScriptStatus.LOADED
        logger.info("Dynamic script loaded: %s (scope %s)", tag.url, tag.scope)
