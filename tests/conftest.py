"""Shared fixtures: fake entry fetcher, remote entry sources, manifests, runtimes."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
import pytest

from federation.fetcher import ScriptFetcher
from federation.loader import LoadOptions
from federation.runtime import FederationRuntime
from sdk.discovery import DiscoveryClient

FIXTURES = Path(__file__).resolve().parent / "fixtures" / "remotes"

PRODUCT_URL = "http://localhost:3002/remoteEntry.py"
CATALOG_URL = "http://localhost:3003/remoteEntry.py"
PRODUCT_SCOPE = "my_project_product_1_0_0"
CATALOG_SCOPE = "my_project_catalog_1_0_0"

# Fetch never completes (a script whose load event never fires).
HANG = object()


def entry_source(name: str) -> str:
    return (FIXTURES / f"{name}.py").read_text(encoding="utf-8")


class FakeFetcher(ScriptFetcher):
    """
    Serves entry sources by URL. A value may be a source string, an exception to
    raise, HANG, or a list of those consumed one per fetch. Unknown URLs fail to connect.
    """

    def __init__(self, sources: dict[str, Any] | None = None) -> None:
        self.sources: dict[str, Any] = dict(sources or {})
        self.calls: list[str] = []
        self.closed = False

    async def fetch(self, url: str) -> str:
        self.calls.append(url)
        source = self.sources.get(url)
        if isinstance(source, list):
            source = source.pop(0) if len(source) > 1 else source[0]
        await asyncio.sleep(0)
        if source is HANG:
            await asyncio.Event().wait()
        if isinstance(source, BaseException):
            raise source
        if source is None:
            raise httpx.ConnectError(f"Connection refused: {url}")
        return source

    async def aclose(self) -> None:
        self.closed = True

    def count(self, url: str) -> int:
        return sum(1 for u in self.calls if u == url)


DEFAULT_TEST_MANIFEST: dict[str, Any] = {
    "schema": "test",
    "microFrontends": {
        "my-project/product": [
            {"url": PRODUCT_URL, "metadata": {"version": "1.0.0", "integrity": ""}}
        ],
        "my-project/catalog": [{"url": CATALOG_URL, "metadata": {"version": "1.0.0"}}],
    },
}


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher(
        {
            PRODUCT_URL: entry_source("product_entry"),
            CATALOG_URL: entry_source("catalog_entry"),
        }
    )


@pytest.fixture
def fast_options() -> LoadOptions:
    return LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)


@pytest.fixture
def runtime(fetcher: FakeFetcher, fast_options: LoadOptions) -> FederationRuntime:
    discovery = DiscoveryClient(fallback_manifest=DEFAULT_TEST_MANIFEST)
    return FederationRuntime(discovery, fetcher=fetcher, load_options=fast_options)
