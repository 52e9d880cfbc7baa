"""
KeyDB client wrapper (Redis-compatible) used as a session-scoped store.
Failures are logged and reported as misses so a store outage never breaks loading.
"""

from __future__ import annotations

import logging

import redis  # redis-py works with KeyDB (same protocol)

logger = logging.getLogger(__name__)


class KeyDBClient:
    """
    Thin string-in/string-out wrapper over redis-py for KeyDB.
    Every call swallows redis.RedisError after logging it.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: str | None = None,
        db: int = 0,
        client: redis.Redis | None = None,
    ) -> None:
        """
        Args:
            host: KeyDB server host
            port: KeyDB server port
            password: Optional password
            db: Database number
            client: Pre-built redis client (overrides host/port/password/db)
        """
        self._address = f"{host}:{port}/{db}"
        self._client = client or redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )

    @property
    def address(self) -> str:
        return self._address

    def ping(self) -> bool:
        """True if the server answers."""
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning("KeyDB %s unreachable: %s", self._address, e)
            return False

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        """
        Store value under key.

        Args:
            key: Session key
            value: Serialized value
            ex: Expiry in seconds (None keeps the key until deleted)

        Returns:
            True if the server stored the value
        """
        try:
            return bool(self._client.set(key, value, ex=ex))
        except redis.RedisError as e:
            logger.warning("KeyDB %s: could not store %s: %s", self._address, key, e)
            return False

    def get(self, key: str) -> str | None:
        """Value for key; None when missing or the server is unavailable."""
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            logger.warning("KeyDB %s: could not read %s: %s", self._address, key, e)
            return None

    def delete(self, *keys: str) -> int:
        """Remove keys; returns how many existed."""
        try:
            return int(self._client.delete(*keys))
        except redis.RedisError as e:
            logger.warning("KeyDB %s: could not delete %s: %s", self._address, keys, e)
            return 0

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as e:
            logger.debug("KeyDB %s close failed: %s", self._address, e)
