"""SQLite implementation of the key-value store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, List, Optional

from ..constants import STORAGE_NAMESPACE
from .base import BaseKeyValueStore


class SQLiteKeyValueStore(BaseKeyValueStore):
    """Persist blobs in a single SQLite table."""

    def __init__(self, db_path: str | Path, namespace: str = STORAGE_NAMESPACE):
        super().__init__(namespace)
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Store API
    async def get(self, key: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
            self.namespace,
            key,
        )
        return row["value"] if row else None

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO kv_store (namespace, key, value) VALUES (?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value",
            self.namespace,
            key,
            value,
        )

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
            self.namespace,
            key,
        )

    async def keys(self) -> List[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key FROM kv_store WHERE namespace = ? ORDER BY key",
            self.namespace,
        )
        return [row["key"] for row in rows]

    async def disconnect(self) -> None:
        await asyncio.to_thread(self._conn.close)

    @property
    def description(self) -> str:
        return f"sqlite://{self.db_path} (namespace={self.namespace})"
