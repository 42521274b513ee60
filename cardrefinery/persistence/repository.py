"""Session repository: CRUD over sessions and the character index."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..constants import (
    MAX_HISTORY_ENTRIES,
    MAX_SESSIONS_PER_CHARACTER,
    SESSION_INDEX_KEY,
    SESSION_KEY_PREFIX,
    StageName,
)
from ..contracts import LoggingNotifier, NotificationSink
from ..errors import MigrationError, NotFoundError, StorageIncompatibleVersionError
from ..models import (
    Session,
    SessionIndex,
    StageConfig,
    StageFieldSelection,
    StageResult,
    default_stage_configs,
    now_ms,
)
from .migrations import migrate_session_blob, session_key
from .versioned import VersionedStore

logger = logging.getLogger(__name__)

SessionMap = Dict[str, Session]
# session id -> owning character id, when the stored record names one
UnreadableMap = Dict[str, Optional[str]]


class SessionRepository:
    """Persist sessions and the character -> session id index.

    Each session is stored under its own key, so writers working on
    different sessions never overwrite each other. The index is rebuilt
    from the stored session keys on every load; an index entry lost to a
    concurrent writer in another process comes back on the next call.
    Calls in one process are serialized with a lock. Two writers saving the
    same session still race, and the last one wins.

    Records that cannot be read (written by a newer build, or corrupt) are
    left in storage untouched and skipped in listings.
    """

    def __init__(
        self,
        store: VersionedStore,
        max_sessions_per_character: int = MAX_SESSIONS_PER_CHARACTER,
        max_history_entries: int = MAX_HISTORY_ENTRIES,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._store = store
        self.max_sessions_per_character = max_sessions_per_character
        self.max_history_entries = max_history_entries
        self._notifier = notifier or LoggingNotifier()
        self._lock = asyncio.Lock()
        # working copy used when the store is degraded
        self._memory: Dict[str, Any] = {}

    @property
    def degraded(self) -> bool:
        return self._store.degraded

    async def initialize(self) -> None:
        """Run storage migrations, degrading to in-memory operation on failure."""
        try:
            await self._store.initialize()
        except (StorageIncompatibleVersionError, MigrationError) as e:
            self._notifier.error(
                f"Session storage unavailable, changes will not be saved: {e}"
            )

    # ------------------------------------------------------------------
    # Raw access, routed to the in-memory copy when degraded
    async def _keys(self) -> List[str]:
        if self._store.degraded:
            return sorted(self._memory)
        return await self._store.keys()

    async def _get(self, key: str) -> Any:
        if self._store.degraded:
            return copy.deepcopy(self._memory.get(key))
        return await self._store.read(key)

    async def _put(self, key: str, blob: Any) -> bool:
        if self._store.degraded:
            self._memory[key] = copy.deepcopy(blob)
            return False
        if not await self._store.write(key, blob):
            logger.error(f"Failed to persist {key}")
            return False
        return True

    async def _drop(self, key: str) -> bool:
        if self._store.degraded:
            self._memory.pop(key, None)
            return False
        return await self._store.remove(key)

    # ------------------------------------------------------------------
    # Load
    @staticmethod
    def _parse(session_id: str, blob: Any) -> Optional[Session]:
        if not isinstance(blob, dict):
            logger.warning(f"Skipping malformed session record {session_id}")
            return None
        try:
            return Session.model_validate(migrate_session_blob(blob))
        except (MigrationError, PydanticValidationError) as e:
            logger.warning(f"Skipping unreadable session {session_id}, record kept: {e}")
            return None

    async def _read_one(self, session_id: str) -> Optional[Session]:
        await self.initialize()
        blob = await self._get(session_key(session_id))
        return None if blob is None else self._parse(session_id, blob)

    async def _load(self) -> Tuple[SessionMap, SessionIndex, UnreadableMap]:
        await self.initialize()
        sessions: SessionMap = {}
        unreadable: UnreadableMap = {}
        for key in await self._keys():
            if not key.startswith(SESSION_KEY_PREFIX):
                continue
            session_id = key[len(SESSION_KEY_PREFIX):]
            blob = await self._get(key)
            session = self._parse(session_id, blob)
            if session is not None:
                sessions[session_id] = session
            else:
                owner = blob.get("characterId") if isinstance(blob, dict) else None
                unreadable[session_id] = owner if isinstance(owner, str) else None

        raw_index = await self._get(SESSION_INDEX_KEY)
        if not isinstance(raw_index, dict):
            raw_index = {}
        index: SessionIndex = {
            str(character_id): [str(i) for i in ids]
            for character_id, ids in raw_index.items()
            if isinstance(ids, list)
        }
        changed = len(index) != len(raw_index)

        if self._heal(sessions, unreadable, index) or changed:
            logger.warning("Repaired inconsistent session index")
            await self._put(SESSION_INDEX_KEY, index)
        return sessions, index, unreadable

    @staticmethod
    def _heal(sessions: SessionMap, unreadable: UnreadableMap, index: SessionIndex) -> bool:
        """Make ``index`` agree with the stored records. Returns ``True`` if it changed."""
        changed = False
        seen: set[str] = set()
        for character_id in list(index):
            kept: List[str] = []
            for session_id in index[character_id]:
                if session_id in sessions:
                    owner: Optional[str] = sessions[session_id].character_id
                elif session_id in unreadable:
                    owner = unreadable[session_id] or character_id
                else:
                    owner = None
                if owner != character_id or session_id in seen:
                    changed = True
                    continue
                seen.add(session_id)
                kept.append(session_id)
            if kept:
                index[character_id] = kept
            else:
                del index[character_id]
                changed = True

        orphans = [(sid, s.character_id) for sid, s in sessions.items()]
        orphans += [(sid, owner) for sid, owner in unreadable.items() if owner]
        for session_id, owner in orphans:
            if session_id not in seen:
                index.setdefault(owner, []).append(session_id)
                changed = True
        return changed

    def _enforce_cap(
        self,
        sessions: SessionMap,
        index: SessionIndex,
        character_id: str,
        keep_id: str,
    ) -> List[str]:
        """Evict readable sessions above the per-character cap, never ``keep_id``."""
        ids = index.get(character_id, [])
        evicted: List[str] = []
        while sum(1 for sid in ids if sid in sessions) > self.max_sessions_per_character:
            candidates = [
                (position, sessions[sid])
                for position, sid in enumerate(ids)
                if sid != keep_id and sid in sessions
            ]
            if not candidates:
                break
            inactive = [c for c in candidates if c[1].status != "active"]
            pool = inactive or candidates
            position, victim = min(pool, key=lambda c: (c[1].updated_at, c[0]))
            ids.pop(position)
            del sessions[victim.id]
            evicted.append(victim.id)
        if evicted:
            logger.info(
                f"Evicted {len(evicted)} sessions for character {character_id}: {evicted}"
            )
        return evicted

    async def _store_session(
        self, session: Session, sessions: SessionMap, index: SessionIndex
    ) -> None:
        """Write ``session``, index it and apply the cap. Caller holds the lock."""
        sessions[session.id] = session
        ids = index.setdefault(session.character_id, [])
        indexed = session.id in ids
        if not indexed:
            ids.append(session.id)
        evicted = self._enforce_cap(sessions, index, session.character_id, session.id)

        await self._put(session_key(session.id), session.to_blob())
        for session_id in evicted:
            await self._drop(session_key(session_id))
        if evicted or not indexed:
            await self._put(SESSION_INDEX_KEY, index)

    # ------------------------------------------------------------------
    # Public API
    async def create(
        self,
        character_id: str,
        character_name: str,
        stage_fields: Optional[StageFieldSelection] = None,
        original_data: Optional[Dict[str, str]] = None,
        configs: Optional[Dict[StageName, StageConfig]] = None,
    ) -> Session:
        """Create, index and persist a new active session."""
        session = Session(
            id=str(uuid.uuid4()),
            character_id=character_id,
            character_name=character_name,
            stage_fields=(
                stage_fields.model_copy(deep=True)
                if stage_fields is not None
                else StageFieldSelection()
            ),
            original_data=dict(original_data or {}),
            configs={
                **default_stage_configs(),
                **copy.deepcopy(configs or {}),
            },
        )
        async with self._lock:
            sessions, index, _ = await self._load()
            await self._store_session(session.model_copy(deep=True), sessions, index)
        logger.info(f"Created session {session.id} for character {character_id}")
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return await self._read_one(session_id)

    async def list_for_character(self, character_id: str) -> List[Session]:
        """Sessions for ``character_id``, most recently updated first."""
        async with self._lock:
            sessions, index, _ = await self._load()
        found = [sessions[sid] for sid in index.get(character_id, []) if sid in sessions]
        return sorted(found, key=lambda s: s.updated_at, reverse=True)

    async def list_all(self) -> Dict[str, List[Session]]:
        async with self._lock:
            sessions, index, _ = await self._load()
        grouped = {
            character_id: sorted(
                (sessions[sid] for sid in ids if sid in sessions),
                key=lambda s: s.updated_at,
                reverse=True,
            )
            for character_id, ids in index.items()
        }
        return {character_id: found for character_id, found in grouped.items() if found}

    async def save(self, session: Session) -> Session:
        """Upsert ``session``, bumping ``updated_at`` and enforcing the cap."""
        session.updated_at = max(now_ms(), session.updated_at + 1)
        async with self._lock:
            sessions, index, _ = await self._load()
            await self._store_session(session.model_copy(deep=True), sessions, index)
        logger.debug(f"Saved session {session.id}")
        return session

    async def append_result(self, session: Session, result: StageResult) -> Session:
        """Record ``result`` as the latest for its stage and persist."""
        session.history.append(result)
        overflow = len(session.history) - self.max_history_entries
        if overflow > 0:
            del session.history[:overflow]
        session.stage_results[result.stage] = result
        return await self.save(session)

    async def delete(self, session_id: str) -> bool:
        """Delete a session. Returns ``False`` if it did not exist."""
        async with self._lock:
            sessions, index, unreadable = await self._load()
            if session_id not in sessions and session_id not in unreadable:
                logger.debug(f"Session {session_id} already deleted")
                return False
            await self._drop(session_key(session_id))
            for character_id in list(index):
                ids = index[character_id]
                if session_id in ids:
                    ids.remove(session_id)
                    if not ids:
                        del index[character_id]
            await self._put(SESSION_INDEX_KEY, index)
        logger.info(f"Deleted session {session_id}")
        return True

    async def delete_all_for_character(self, character_id: str) -> int:
        async with self._lock:
            _, index, _ = await self._load()
            ids = index.pop(character_id, [])
            for session_id in ids:
                await self._drop(session_key(session_id))
            if ids:
                await self._put(SESSION_INDEX_KEY, index)
        logger.info(f"Deleted {len(ids)} sessions for character {character_id}")
        return len(ids)

    async def purge_all(self) -> int:
        """Delete every session of every character, readable or not."""
        async with self._lock:
            sessions, _, unreadable = await self._load()
            session_ids = [*sessions, *unreadable]
            for session_id in session_ids:
                await self._drop(session_key(session_id))
            await self._drop(SESSION_INDEX_KEY)
        logger.info(f"Deleted ALL {len(session_ids)} sessions")
        return len(session_ids)

    async def rename(self, session_id: str, name: Optional[str]) -> Session:
        async with self._lock:
            session = await self._read_one(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            session.name = (name or "").strip() or None
            session.updated_at = max(now_ms(), session.updated_at + 1)
            await self._put(session_key(session_id), session.to_blob())
        return session
