"""
Federation SDK: common library for hosts embedding the remote runtime.
Use for config section access, remote discovery, and logging.

Example:
    from sdk import get_federation_section
    cfg = get_federation_section(raw_config)

    from sdk import DiscoveryClient, derive_scope
    from sdk import get_logger
"""

from __future__ import annotations

from sdk.config import get_federation_section, get_section
from sdk.discovery import (
    DEFAULT_MANIFEST,
    DiscoveryClient,
    DiscoveryManifest,
    RemoteDescriptor,
    RemoteLocation,
    RemoteMetadata,
    derive_scope,
)
from sdk.logging import configure_logging, get_logger

__all__ = [
    "DEFAULT_MANIFEST",
    "DiscoveryClient",
    "DiscoveryManifest",
    "RemoteDescriptor",
    "RemoteLocation",
    "RemoteMetadata",
    "configure_logging",
    "derive_scope",
    "get_federation_section",
    "get_logger",
    "get_section",
]
