"""
YAML configuration loading for the remote runtime.

load_config() reads config.yaml from the project root (or FEDERATION_CONFIG) and
merges an optional config.local.yaml next to it; sections are normalized by
sdk.config.get_federation_section().
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = _ROOT / "config.yaml"
LOCAL_CONFIG_FILENAME = "config.local.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML (or JSON) mapping from path. Returns {} if missing or invalid."""
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.debug("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return base with override merged in; nested mappings merge, other values replace."""
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    """
    Load the raw config dict.

    Args:
        path: Config file; defaults to $FEDERATION_CONFIG or config.yaml in the project root.
    """
    if path is None:
        path = os.environ.get("FEDERATION_CONFIG") or DEFAULT_CONFIG_PATH
    path = Path(path)
    config = load_yaml_file(path)
    local = load_yaml_file(path.parent / LOCAL_CONFIG_FILENAME)
    if local:
        logger.debug("Merging %s", path.parent / LOCAL_CONFIG_FILENAME)
        config = deep_merge(config, local)
    return config
