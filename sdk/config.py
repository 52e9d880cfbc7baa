"""
Normalized config section access for the remote runtime.
Provides get_section() and get_federation_section() so config normalization
lives in one place; the runtime factory and callers use these instead of
duplicating defaults and clamping.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable

SESSION_CACHE_BACKENDS = ("file", "keydb", "none")


def get_section(
    raw_config: dict,
    section: str,
    defaults: dict[str, Any],
    validators: dict[str, Callable[[Any], Any]] | None = None,
) -> dict[str, Any]:
    """
    Return a normalized config section by merging raw section with defaults and applying validators.

    Args:
        raw_config: Full merged config dict (e.g. from load_config()).
        section: Top-level key (e.g. "discovery", "loader").
        defaults: Default values for the section; merged with raw_config.get(section, {}).
        validators: Optional dict mapping section key -> callable(value) -> value (e.g. clamp int).
            A validator that raises TypeError/ValueError falls back to the default.

    Returns:
        New dict with all keys from defaults, overridden by raw section, then validated.
    """
    validators = validators or {}
    raw_section = raw_config.get(section) or {}
    if not isinstance(raw_section, dict):
        raw_section = {}
    out = dict(defaults)
    for k, v in raw_section.items():
        if k in defaults:
            out[k] = v
    for k, validator in validators.items():
        if k in out:
            try:
                out[k] = validator(out[k])
            except (TypeError, ValueError):
                out[k] = defaults.get(k)
    return out


def _clamp_float(lo: float, hi: float) -> Callable[[Any], float]:
    return lambda v: max(lo, min(hi, float(v)))


def _clamp_int(lo: int, hi: int) -> Callable[[Any], int]:
    return lambda v: max(lo, min(hi, int(v)))


def _optional_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _backend(v: Any) -> str:
    s = str(v).strip().lower()
    if s not in SESSION_CACHE_BACKENDS:
        raise ValueError(f"Unknown session cache backend: {v}")
    return s


def _str_mapping(v: Any) -> dict[str, str]:
    if not v:
        return {}
    if not isinstance(v, dict):
        raise TypeError("expected a mapping")
    return {str(k): str(val) for k, val in v.items()}


def get_federation_section(raw_config: dict) -> dict[str, Any]:
    """
    Return normalized runtime config: discovery, loader, session_cache, and static remotes.
    Environment overrides: DISCOVERY_ENDPOINT, KEYDB_HOST, KEYDB_PORT.
    """
    federation = raw_config.get("federation") or {}
    if not isinstance(federation, dict):
        federation = {}

    discovery = get_section(
        federation,
        "discovery",
        {
            "endpoint": None,
            "timeout_sec": 10.0,
            "fallback_manifest": None,
            "headers": {},
        },
        {
            "endpoint": _optional_str,
            "timeout_sec": _clamp_float(1.0, 120.0),
            "fallback_manifest": _optional_str,
            "headers": _str_mapping,
        },
    )
    env_endpoint = os.environ.get("DISCOVERY_ENDPOINT", "").strip()
    if env_endpoint:
        discovery["endpoint"] = env_endpoint

    loader = get_section(
        federation,
        "loader",
        {
            "timeout_sec": 30.0,
            "max_retries": 3,
            "backoff_sec": 1.0,
            "verify_integrity": False,
        },
        {
            "timeout_sec": _clamp_float(0.01, 600.0),
            "max_retries": _clamp_int(1, 10),
            "backoff_sec": _clamp_float(0.0, 60.0),
            "verify_integrity": bool,
        },
    )

    session_cache = get_section(
        federation,
        "session_cache",
        {
            "backend": "file",
            "ttl_sec": 1800,
            "path": "data/session_cache",
            "key": "micro-frontend-data",
            "keydb_host": "localhost",
            "keydb_port": 6379,
        },
        {
            "backend": _backend,
            "ttl_sec": _clamp_int(1, 7 * 24 * 3600),
            "path": lambda v: str(Path(str(v))),
            "key": lambda v: str(v).strip() or "micro-frontend-data",
            "keydb_port": _clamp_int(1, 65535),
        },
    )
    session_cache["keydb_host"] = os.environ.get(
        "KEYDB_HOST", str(session_cache["keydb_host"])
    )
    try:
        session_cache["keydb_port"] = int(
            os.environ.get("KEYDB_PORT", str(session_cache["keydb_port"]))
        )
    except ValueError:
        session_cache["keydb_port"] = 6379

    remotes = federation.get("remotes") or {}
    if not isinstance(remotes, dict):
        remotes = {}

    return {
        "discovery": discovery,
        "loader": loader,
        "session_cache": session_cache,
        "remotes": {str(scope): str(url) for scope, url in remotes.items() if url},
    }
