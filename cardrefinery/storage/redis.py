"""Redis implementation of the key-value store."""

from __future__ import annotations

from typing import Any, List, Optional

import redis.asyncio as redis

from ..constants import STORAGE_NAMESPACE
from .base import BaseKeyValueStore


class RedisKeyValueStore(BaseKeyValueStore):
    """Persist blobs as plain Redis string keys under ``namespace:``."""

    def __init__(self, url: str, namespace: str = STORAGE_NAMESPACE) -> None:
        super().__init__(namespace)
        self.url = url
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis.from_url(self.url, decode_responses=True)
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        client = await self._client()
        return await client.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        client = await self._client()
        await client.set(self._key(key), value)

    async def remove(self, key: str) -> None:
        client = await self._client()
        await client.delete(self._key(key))

    async def keys(self) -> List[str]:
        client = await self._client()
        prefix = f"{self.namespace}:"
        found = [k[len(prefix) :] async for k in client.scan_iter(match=f"{prefix}*")]
        return sorted(found)

    @property
    def description(self) -> str:
        return f"{self.url} (namespace={self.namespace})"
