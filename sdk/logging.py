"""
Logging helpers: package-namespaced loggers and a one-call basic configuration.
"""

from __future__ import annotations

import logging
import os

LOGGER_NAMESPACE = "federation"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace (e.g. "federation.app")."""
    if name == LOGGER_NAMESPACE or name.startswith(LOGGER_NAMESPACE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def configure_logging(level: str | int | None = None) -> None:
    """
    Configure root logging once. Level defaults to $FEDERATION_LOG_LEVEL or INFO;
    an unknown level name falls back to INFO.
    """
    if level is None:
        level = os.environ.get("FEDERATION_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
