"""In-memory key-value store for testing."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from ..constants import STORAGE_NAMESPACE
from .base import BaseKeyValueStore


class InMemoryKeyValueStore(BaseKeyValueStore):
    """Keep blobs in a local dict.

    Useful for tests or when no storage is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, namespace: str = STORAGE_NAMESPACE) -> None:
        super().__init__(namespace)
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys(self) -> List[str]:
        async with self._lock:
            return sorted(self._data)
