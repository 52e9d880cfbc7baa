"""Tests for federation.scripts: ScriptHost inject/execute/remove, tag lookup, integrity."""

from __future__ import annotations

import asyncio
import hashlib

import httpx
import pytest

from conftest import HANG, PRODUCT_SCOPE, PRODUCT_URL, FakeFetcher, entry_source
from federation.errors import InvalidContainer, RemoteUnavailable
from federation.scripts import HostGlobals, ScriptHost, ScriptStatus


@pytest.mark.asyncio
async def test_inject_executes_entry_and_registers_container(
    fetcher: FakeFetcher,
) -> None:
    host = ScriptHost(fetcher)
    tag = host.inject(PRODUCT_URL, PRODUCT_SCOPE)
    assert tag.status is ScriptStatus.PENDING
    await tag.completion
    assert tag.loaded
    assert PRODUCT_SCOPE in host.host_globals
    container = host.host_globals[PRODUCT_SCOPE]
    assert callable(container.init) and callable(container.get)
    assert tag.module is not None
    assert tag.module.SCOPE == PRODUCT_SCOPE
    assert host.injection_count == 1
    assert host.find(scope=PRODUCT_SCOPE) is tag
    assert host.find(url=PRODUCT_URL) is tag


@pytest.mark.asyncio
async def test_each_entry_runs_in_its_own_namespace(fetcher: FakeFetcher) -> None:
    globals_ = HostGlobals()
    host = ScriptHost(fetcher, globals_)
    first = host.inject(PRODUCT_URL, PRODUCT_SCOPE)
    await first.completion
    second = host.inject(PRODUCT_URL, PRODUCT_SCOPE)
    await second.completion
    assert first.module is not second.module
    assert host.host_globals is globals_


@pytest.mark.asyncio
async def test_fetch_failure_raises_remote_unavailable() -> None:
    host = ScriptHost(FakeFetcher({"http://x/e.py": httpx.ConnectError("refused")}))
    tag = host.inject("http://x/e.py", "x_1")
    with pytest.raises(RemoteUnavailable) as excinfo:
        await tag.completion
    assert excinfo.value.scope == "x_1"
    assert excinfo.value.url == "http://x/e.py"
    assert tag.status is ScriptStatus.ERROR
    assert host.find(scope="x_1") is None


@pytest.mark.asyncio
async def test_execution_error_is_invalid_container() -> None:
    host = ScriptHost(FakeFetcher({"http://x/e.py": entry_source("raising_entry")}))
    tag = host.inject("http://x/e.py", "x_1")
    with pytest.raises(InvalidContainer, match="failed to execute"):
        await tag.completion
    assert tag.status is ScriptStatus.ERROR


@pytest.mark.asyncio
async def test_remove_cancels_pending_load() -> None:
    host = ScriptHost(FakeFetcher({"http://x/e.py": HANG}))
    tag = host.inject("http://x/e.py", "x_1")
    await asyncio.sleep(0.01)
    host.remove(tag)
    await asyncio.sleep(0.01)
    assert tag.completion.cancelled()
    assert host.tags == []


@pytest.mark.asyncio
async def test_integrity_mismatch_is_invalid_container(fetcher: FakeFetcher) -> None:
    host = ScriptHost(fetcher, verify_integrity=True)
    tag = host.inject(PRODUCT_URL, PRODUCT_SCOPE, integrity="0" * 32)
    with pytest.raises(InvalidContainer, match="Integrity"):
        await tag.completion
    assert PRODUCT_SCOPE not in host.host_globals


@pytest.mark.asyncio
async def test_integrity_match_loads(fetcher: FakeFetcher) -> None:
    digest = hashlib.md5(entry_source("product_entry").encode("utf-8")).hexdigest()
    host = ScriptHost(fetcher, verify_integrity=True)
    tag = host.inject(PRODUCT_URL, PRODUCT_SCOPE, integrity=digest)
    await tag.completion
    assert tag.loaded


@pytest.mark.asyncio
async def test_undecodable_entry_is_invalid_container() -> None:
    error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
    host = ScriptHost(FakeFetcher({"http://x/e.py": error}))
    tag = host.inject("http://x/e.py", "x_1")
    with pytest.raises(InvalidContainer, match="not valid UTF-8"):
        await tag.completion
    assert tag.status is ScriptStatus.ERROR


@pytest.mark.asyncio
async def test_invalid_url_is_remote_unavailable() -> None:
    host = ScriptHost(FakeFetcher({"http://x/e.py": httpx.InvalidURL("bad host")}))
    tag = host.inject("http://x/e.py", "x_1")
    with pytest.raises(RemoteUnavailable, match="bad host"):
        await tag.completion
    assert tag.status is ScriptStatus.ERROR
