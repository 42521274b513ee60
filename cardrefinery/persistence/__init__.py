"""Persistence layer for refinement sessions."""

from __future__ import annotations

from typing import Optional

from ..config import RefineryConfig, load_config
from ..contracts import NotificationSink
from ..storage import get_store
from .migrations import (
    STORAGE_MIGRATIONS,
    migrate_session_blob,
    migrate_storage,
    session_key,
)
from .repository import SessionRepository
from .versioned import VersionedStore


def get_repository(
    url: Optional[str] = None,
    config: Optional[RefineryConfig] = None,
    notifier: Optional[NotificationSink] = None,
) -> SessionRepository:
    """Build a session repository on the configured storage backend."""

    config = config or load_config()
    store = VersionedStore(get_store(url, config))
    return SessionRepository(
        store,
        max_sessions_per_character=config.limits.max_sessions_per_character,
        max_history_entries=config.limits.max_history_entries,
        notifier=notifier,
    )


__all__ = [
    "STORAGE_MIGRATIONS",
    "SessionRepository",
    "VersionedStore",
    "get_repository",
    "migrate_session_blob",
    "migrate_storage",
    "session_key",
]
