"""PostgreSQL implementation of the key-value store."""

from __future__ import annotations

from typing import List, Optional

import asyncpg

from ..constants import STORAGE_NAMESPACE
from .base import BaseKeyValueStore


class PostgresKeyValueStore(BaseKeyValueStore):
    """Persist blobs in a PostgreSQL table."""

    def __init__(self, dsn: str, namespace: str = STORAGE_NAMESPACE):
        super().__init__(namespace)
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
            """
        )

    async def connect(self) -> None:
        conn = await self._connect()
        await conn.close()

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[str]:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT value FROM kv_store WHERE namespace = $1 AND key = $2",
                self.namespace,
                key,
            )
        finally:
            await conn.close()

    async def set(self, key: str, value: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO kv_store (namespace, key, value) VALUES ($1, $2, $3) "
                "ON CONFLICT (namespace, key) DO UPDATE SET value = EXCLUDED.value",
                self.namespace,
                key,
                value,
            )
        finally:
            await conn.close()

    async def remove(self, key: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM kv_store WHERE namespace = $1 AND key = $2",
                self.namespace,
                key,
            )
        finally:
            await conn.close()

    async def keys(self) -> List[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT key FROM kv_store WHERE namespace = $1 ORDER BY key",
                self.namespace,
            )
        finally:
            await conn.close()
        return [row["key"] for row in rows]

    @property
    def description(self) -> str:
        return f"postgresql (namespace={self.namespace})"
