"""Versioned blob store with forward migration."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from ..constants import STORAGE_META_KEY, STORAGE_VERSION
from ..errors import MigrationError, StorageIncompatibleVersionError
from ..models import StorageMeta, now_ms
from ..storage.base import BaseKeyValueStore
from .migrations import STORAGE_MIGRATIONS, MigrationStep, migrate_storage

logger = logging.getLogger(__name__)


class VersionedStore:
    """Typed JSON blobs on top of a key-value store.

    :meth:`initialize` compares the stamped :class:`StorageMeta` with
    ``version`` and migrates forward. Data written by a newer build, or a
    failing migration, puts the store in degraded mode: reads return
    ``None`` and writes never reach the backend.
    """

    def __init__(
        self,
        backend: BaseKeyValueStore,
        version: int = STORAGE_VERSION,
        steps: Optional[Dict[int, MigrationStep]] = None,
    ) -> None:
        self.backend = backend
        self.version = version
        self._steps = steps if steps is not None else STORAGE_MIGRATIONS
        self._initialized = False
        self.degraded = False
        self.degraded_reason: Optional[str] = None

    async def initialize(self) -> Optional[StorageMeta]:
        """Check the stored version and migrate if needed.

        Safe to call repeatedly. Once the check has completed (or degraded
        the store) later calls do no work; a backend error before that
        propagates and the check runs again on the next call.

        Raises:
            StorageIncompatibleVersionError: stored data is newer than
                ``version``.
            MigrationError: a migration step failed.
        """
        if self._initialized:
            return None if self.degraded else await self.meta()

        try:
            raw_meta = await self._read_raw(STORAGE_META_KEY)
        except MigrationError as e:
            self._degrade(str(e))
            raise

        if raw_meta is None:
            meta = StorageMeta(version=self.version)
            if await self._write_raw(STORAGE_META_KEY, meta.to_blob()):
                logger.info(f"Initialized storage at version {self.version}")
                self._initialized = True
            return meta

        try:
            meta = StorageMeta.model_validate(raw_meta)
        except ValueError as e:
            error = MigrationError(f"Unreadable storage meta: {e}")
            self._degrade(str(error))
            raise error from e

        if meta.version > self.version:
            error = StorageIncompatibleVersionError(meta.version, self.version)
            self._degrade(str(error))
            raise error

        if meta.version < self.version:
            try:
                meta = await self._migrate(meta)
            except MigrationError as e:
                self._degrade(str(e))
                raise
        self._initialized = True
        return meta

    async def _migrate(self, meta: StorageMeta) -> StorageMeta:
        blobs: Dict[str, Any] = {}
        for key in await self.backend.keys():
            if key != STORAGE_META_KEY:
                blobs[key] = await self._read_raw(key)

        migrated = migrate_storage(blobs, meta.version, self.version, self._steps)

        for key, value in migrated.items():
            if value is not None and value != blobs.get(key):
                if not await self._write_raw(key, value):
                    raise MigrationError(f"Could not persist migrated {key}")
        # removals only after every new key is in place
        for key in blobs:
            if key not in migrated and not await self._remove_raw(key):
                raise MigrationError(f"Could not remove migrated {key}")

        previous = meta.version
        meta = StorageMeta(version=self.version, last_migration=now_ms())
        if not await self._write_raw(STORAGE_META_KEY, meta.to_blob()):
            raise MigrationError("Could not persist storage meta")
        logger.info(f"Migrated storage from version {previous} to {self.version}")
        return meta

    def _degrade(self, reason: str) -> None:
        self._initialized = True
        self.degraded = True
        self.degraded_reason = reason
        logger.error(f"Storage degraded, sessions will not be persisted: {reason}")

    async def _read_raw(self, key: str) -> Any:
        text = await self.backend.get(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise MigrationError(f"Stored value for {key} is not valid JSON: {e}") from e

    async def _write_raw(self, key: str, blob: Any) -> bool:
        try:
            await self.backend.set(key, json.dumps(blob, ensure_ascii=False))
        except Exception:
            logger.exception(f"Failed to write {key} to storage")
            return False
        return True

    async def _remove_raw(self, key: str) -> bool:
        try:
            await self.backend.remove(key)
        except Exception:
            logger.exception(f"Failed to remove {key} from storage")
            return False
        return True

    # ------------------------------------------------------------------
    # Blob API
    async def meta(self) -> Optional[StorageMeta]:
        raw = await self._read_raw(STORAGE_META_KEY)
        return StorageMeta.model_validate(raw) if raw is not None else None

    async def keys(self) -> List[str]:
        """Every stored key except the storage meta."""
        if self.degraded:
            return []
        return [key for key in await self.backend.keys() if key != STORAGE_META_KEY]

    async def read(self, key: str) -> Any:
        """Return the decoded blob for ``key`` or ``None``."""
        if self.degraded:
            return None
        try:
            return await self._read_raw(key)
        except MigrationError as e:
            logger.error(str(e))
            return None

    async def write(self, key: str, blob: Any) -> bool:
        """Store ``blob`` under ``key``. Returns ``False`` if nothing was written."""
        if self.degraded:
            return False
        return await self._write_raw(key, blob)

    async def remove(self, key: str) -> bool:
        if self.degraded:
            return False
        return await self._remove_raw(key)
