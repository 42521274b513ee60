"""Key-value storage backends and factory."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RefineryConfig, load_config
from ..errors import ConfigError
from .base import BaseKeyValueStore
from .inmemory import InMemoryKeyValueStore
from .sqlite import SQLiteKeyValueStore


def get_store(
    url: Optional[str] = None, config: Optional[RefineryConfig] = None
) -> BaseKeyValueStore:
    """Factory function to obtain a key-value store.

    The backend is selected from ``url``, which can be provided explicitly,
    via environment variable ``CARDREFINERY_STORAGE_URL``, or from loaded
    configuration. ``memory://`` selects the in-process store.
    """

    config = config or load_config()
    url = url or os.getenv("CARDREFINERY_STORAGE_URL") or config.storage.url
    namespace = config.storage.key_prefix

    if not url or url.startswith("memory://"):
        return InMemoryKeyValueStore(namespace)

    if url.startswith("sqlite://"):
        path = url.replace("sqlite://", "", 1)
        return SQLiteKeyValueStore(path or ":memory:", namespace)
    if url.startswith("postgres://") or url.startswith("postgresql://"):
        from .postgres import PostgresKeyValueStore

        return PostgresKeyValueStore(url, namespace)
    if url.startswith("redis://") or url.startswith("rediss://"):
        from .redis import RedisKeyValueStore

        return RedisKeyValueStore(url, namespace)

    raise ConfigError(f"Unsupported storage backend: {url}")


__all__ = [
    "BaseKeyValueStore",
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    "get_store",
]
