"""Tests for federation.loader: idempotent load, join semantics, timeout, retries, invalid containers."""

from __future__ import annotations

import asyncio
import logging
import time

import httpx
import pytest

from conftest import (
    HANG,
    PRODUCT_SCOPE,
    PRODUCT_URL,
    FakeFetcher,
    entry_source,
)
from federation.errors import InvalidContainer, LoadTimeout, RemoteUnavailable
from federation.loader import ContainerLoader, LoadOptions
from federation.scripts import ScriptHost
from federation.state import LoadStatus

BROKEN_URL = "http://localhost:3009/remoteEntry.py"
BROKEN_SCOPE = "broken_1_0_0"


def _loader(fetcher: FakeFetcher) -> tuple[ContainerLoader, ScriptHost]:
    scripts = ScriptHost(fetcher)
    return ContainerLoader(scripts), scripts


@pytest.mark.asyncio
async def test_load_returns_verified_handle(
    fetcher: FakeFetcher, fast_options: LoadOptions
) -> None:
    loader, scripts = _loader(fetcher)
    handle = await loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options)
    assert handle.scope == PRODUCT_SCOPE
    assert loader.registry.get(PRODUCT_SCOPE) is handle
    assert loader.state(PRODUCT_SCOPE).status is LoadStatus.READY
    assert loader.state(PRODUCT_SCOPE).attempt == 1
    assert scripts.find(scope=PRODUCT_SCOPE) is not None


@pytest.mark.asyncio
async def test_second_load_reuses_handle_without_network(
    fetcher: FakeFetcher, fast_options: LoadOptions
) -> None:
    loader, scripts = _loader(fetcher)
    first = await loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options)
    second = await loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options)
    assert first is second
    assert fetcher.count(PRODUCT_URL) == 1
    assert scripts.injection_count == 1


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_injection(
    fetcher: FakeFetcher, fast_options: LoadOptions
) -> None:
    loader, scripts = _loader(fetcher)
    first, second = await asyncio.gather(
        loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options),
        loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options),
    )
    assert first is second
    assert scripts.injection_count == 1
    assert fetcher.count(PRODUCT_URL) == 1


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_rejection() -> None:
    fetcher = FakeFetcher({BROKEN_URL: entry_source("no_get_entry")})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)
    results = await asyncio.gather(
        loader.load(BROKEN_SCOPE, BROKEN_URL, options),
        loader.load(BROKEN_SCOPE, BROKEN_URL, options),
        return_exceptions=True,
    )
    assert isinstance(results[0], InvalidContainer)
    assert results[0] is results[1]
    assert scripts.injection_count == 1


@pytest.mark.asyncio
async def test_load_timeout_removes_injected_tag() -> None:
    fetcher = FakeFetcher({PRODUCT_URL: HANG})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=0.01, max_retries=1)
    started = time.monotonic()
    with pytest.raises(LoadTimeout) as excinfo:
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    elapsed = time.monotonic() - started
    assert elapsed < 1.0
    assert excinfo.value.scope == PRODUCT_SCOPE
    assert excinfo.value.timeout_sec == 0.01
    assert scripts.tags == []
    assert loader.state(PRODUCT_SCOPE).failed
    assert PRODUCT_SCOPE not in loader.registry


@pytest.mark.asyncio
async def test_timeout_is_retried_like_network_failure(fetcher: FakeFetcher) -> None:
    fetcher.sources[PRODUCT_URL] = [HANG, entry_source("product_entry")]
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=0.05, max_retries=3, backoff_sec=0.001)
    handle = await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert handle.scope == PRODUCT_SCOPE
    assert loader.state(PRODUCT_SCOPE).attempt == 2
    assert scripts.injection_count == 2
    assert len(scripts.tags) == 1


@pytest.mark.asyncio
async def test_retries_exhausted_fails_after_three_attempts() -> None:
    fetcher = FakeFetcher()
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)
    with pytest.raises(RemoteUnavailable) as excinfo:
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert not isinstance(excinfo.value, LoadTimeout)
    assert excinfo.value.attempt == 3
    state = loader.state(PRODUCT_SCOPE)
    assert state.failed
    assert state.attempt == 3
    assert state.last_error is excinfo.value
    assert fetcher.count(PRODUCT_URL) == 3
    await asyncio.sleep(0.05)
    assert fetcher.count(PRODUCT_URL) == 3
    assert scripts.tags == []


@pytest.mark.asyncio
async def test_failed_session_leaves_no_state_for_next_load() -> None:
    fetcher = FakeFetcher({PRODUCT_URL: httpx.ConnectError("refused")})
    loader, _ = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=2, backoff_sec=0.001)
    with pytest.raises(RemoteUnavailable):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    fetcher.sources[PRODUCT_URL] = entry_source("product_entry")
    handle = await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert handle.scope == PRODUCT_SCOPE
    assert fetcher.count(PRODUCT_URL) == 3
    assert loader.state(PRODUCT_SCOPE).ready
    assert loader.state(PRODUCT_SCOPE).attempt == 1


@pytest.mark.asyncio
async def test_linear_backoff_between_attempts() -> None:
    fetcher = FakeFetcher()
    loader, _ = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.05)
    started = time.monotonic()
    with pytest.raises(RemoteUnavailable):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    # 0.05 * 1 + 0.05 * 2
    assert time.monotonic() - started >= 0.14


@pytest.mark.asyncio
async def test_invalid_container_not_retried_and_not_cached() -> None:
    fetcher = FakeFetcher({BROKEN_URL: entry_source("no_get_entry")})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)
    with pytest.raises(InvalidContainer, match="missing required methods"):
        await loader.load(BROKEN_SCOPE, BROKEN_URL, options)
    assert fetcher.count(BROKEN_URL) == 1
    assert loader.state(BROKEN_SCOPE).failed
    assert loader.state(BROKEN_SCOPE).attempt == 1
    assert BROKEN_SCOPE not in loader.registry
    assert BROKEN_SCOPE not in scripts.host_globals
    assert scripts.tags == []

    with pytest.raises(InvalidContainer):
        await loader.load(BROKEN_SCOPE, BROKEN_URL, options)
    assert fetcher.count(BROKEN_URL) == 2


@pytest.mark.asyncio
async def test_entry_registering_other_scope_is_invalid(
    fetcher: FakeFetcher, fast_options: LoadOptions
) -> None:
    loader, _ = _loader(fetcher)
    with pytest.raises(InvalidContainer, match="not available"):
        await loader.load("my_project_product_2_0_0", PRODUCT_URL, fast_options)


@pytest.mark.asyncio
async def test_loaded_entry_is_reused_by_another_loader(
    fetcher: FakeFetcher, fast_options: LoadOptions
) -> None:
    scripts = ScriptHost(fetcher)
    await ContainerLoader(scripts).load(PRODUCT_SCOPE, PRODUCT_URL, fast_options)
    other = ContainerLoader(scripts)
    handle = await other.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options)
    assert handle.scope == PRODUCT_SCOPE
    assert scripts.injection_count == 1


@pytest.mark.asyncio
async def test_state_machine_observable_during_retries() -> None:
    fetcher = FakeFetcher()
    loader, _ = _loader(fetcher)
    seen: list[tuple[str, int]] = []
    loader.state_machine(PRODUCT_SCOPE).subscribe(
        lambda s: seen.append((s.status.value, s.attempt))
    )
    options = LoadOptions(timeout_sec=1.0, max_retries=2, backoff_sec=0.001)
    with pytest.raises(RemoteUnavailable):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert seen == [("loading", 1), ("loading", 1), ("loading", 2), ("failed", 2)]


def test_state_for_unknown_scope_is_idle() -> None:
    loader, _ = _loader(FakeFetcher())
    assert loader.state("nope").status is LoadStatus.IDLE
    assert loader.default_options.timeout_sec == 30.0
    assert loader.default_options.max_retries == 3


@pytest.mark.asyncio
async def test_undecodable_entry_fails_once_and_detaches_tag() -> None:
    error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
    fetcher = FakeFetcher({PRODUCT_URL: error})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)
    with pytest.raises(InvalidContainer):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert scripts.tags == []
    assert fetcher.count(PRODUCT_URL) == 1
    assert loader.state(PRODUCT_SCOPE).failed
    assert loader.state(PRODUCT_SCOPE).attempt == 1


@pytest.mark.asyncio
async def test_invalid_url_is_retried_and_detaches_tags() -> None:
    fetcher = FakeFetcher({PRODUCT_URL: httpx.InvalidURL("bad host")})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=2, backoff_sec=0.001)
    with pytest.raises(RemoteUnavailable):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert scripts.tags == []
    assert fetcher.count(PRODUCT_URL) == 2


@pytest.mark.asyncio
async def test_unexpected_fetch_error_detaches_tag_without_retry() -> None:
    fetcher = FakeFetcher({PRODUCT_URL: RuntimeError("fetcher bug")})
    loader, scripts = _loader(fetcher)
    options = LoadOptions(timeout_sec=1.0, max_retries=3, backoff_sec=0.001)
    with pytest.raises(RuntimeError, match="fetcher bug"):
        await loader.load(PRODUCT_SCOPE, PRODUCT_URL, options)
    assert scripts.tags == []
    assert fetcher.count(PRODUCT_URL) == 1
    assert loader.state(PRODUCT_SCOPE).failed


@pytest.mark.asyncio
async def test_concurrent_load_with_other_url_is_logged(
    fetcher: FakeFetcher,
    fast_options: LoadOptions,
    caplog: pytest.LogCaptureFixture,
) -> None:
    other_url = "http://localhost:4002/remoteEntry.py"
    loader, scripts = _loader(fetcher)
    with caplog.at_level(logging.WARNING, logger="federation.loader"):
        first, second = await asyncio.gather(
            loader.load(PRODUCT_SCOPE, PRODUCT_URL, fast_options),
            loader.load(PRODUCT_SCOPE, other_url, fast_options),
        )
    assert first is second
    assert scripts.injection_count == 1
    assert fetcher.count(other_url) == 0
    messages = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any(other_url in m and PRODUCT_URL in m for m in messages)
