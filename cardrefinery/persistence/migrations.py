"""Forward migrations for stored blobs.

Storage-level steps transform the whole blob map from version ``N`` to
``N + 1``. The per-session migration upgrades a single session record and
runs on every load, so records written by older builds after the storage
migration still come out in the current shape.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict

from ..constants import (
    SESSION_KEY_PREFIX,
    SESSION_VERSION,
    SESSIONS_KEY,
    STAGES,
    STORAGE_VERSION,
)
from ..errors import MigrationError

logger = logging.getLogger(__name__)

Blobs = Dict[str, Any]
MigrationStep = Callable[[Blobs], Blobs]


def session_key(session_id: str) -> str:
    """Storage key of a single session record."""
    return f"{SESSION_KEY_PREFIX}{session_id}"


def _legacy_stage_fields(session: Dict[str, Any]) -> bool:
    """Convert ``selectedFields`` into ``stageFields`` in place.

    Returns ``True`` when the record was changed.
    """
    if "selectedFields" not in session:
        return False
    legacy = session.pop("selectedFields")
    if not session.get("stageFields"):
        session["stageFields"] = {
            "base": legacy if isinstance(legacy, dict) else {},
            "linked": True,
            "overrides": {},
        }
    return True


def _v0_to_v1(blobs: Blobs) -> Blobs:
    # initial layout, nothing to transform
    return blobs


def _v1_to_v2(blobs: Blobs) -> Blobs:
    sessions = blobs.get(SESSIONS_KEY)
    if not isinstance(sessions, dict):
        return blobs
    migrated = 0
    for session in sessions.values():
        if isinstance(session, dict) and _legacy_stage_fields(session):
            migrated += 1
    if migrated:
        logger.info(f"Converted selectedFields to stageFields for {migrated} sessions")
    return blobs


def _v2_to_v3(blobs: Blobs) -> Blobs:
    sessions = blobs.get(SESSIONS_KEY)
    if not isinstance(sessions, dict):
        return blobs
    for session_id, session in sessions.items():
        # a record already split by an interrupted run wins
        blobs.setdefault(session_key(str(session_id)), session)
    del blobs[SESSIONS_KEY]
    logger.info(f"Moved {len(sessions)} sessions to per-session keys")
    return blobs


# from-version -> step producing from-version + 1
STORAGE_MIGRATIONS: Dict[int, MigrationStep] = {
    0: _v0_to_v1,
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate_storage(
    blobs: Blobs,
    from_version: int,
    to_version: int = STORAGE_VERSION,
    steps: Dict[int, MigrationStep] = STORAGE_MIGRATIONS,
) -> Blobs:
    """Apply every step between ``from_version`` and ``to_version``.

    Works on a deep copy so a failing step leaves ``blobs`` untouched.
    """
    migrated = copy.deepcopy(blobs)
    for version in range(from_version, to_version):
        step = steps.get(version)
        if step is None:
            raise MigrationError(f"No migration step from version {version}")
        try:
            migrated = step(migrated)
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(
                f"Migration {version} -> {version + 1} failed: {e}"
            ) from e
        logger.debug(f"Applied storage migration {version} -> {version + 1}")
    return migrated


def migrate_session_blob(blob: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade one stored session record to ``SESSION_VERSION``.

    Raises:
        MigrationError: the record was written by a newer build.
    """
    version = blob.get("version")
    if isinstance(version, int) and version > SESSION_VERSION:
        raise MigrationError(
            f"Session {blob.get('id')} has version {version}, "
            f"this build supports up to {SESSION_VERSION}"
        )
    session = copy.deepcopy(blob)
    _legacy_stage_fields(session)

    results = session.get("stageResults")
    if not isinstance(results, dict):
        # older records only kept history; the latest entry per stage wins
        results = {stage: None for stage in STAGES}
        for entry in session.get("history") or []:
            if isinstance(entry, dict) and entry.get("stage") in results:
                results[entry["stage"]] = entry
        session["stageResults"] = results
    else:
        for stage in STAGES:
            results.setdefault(stage, None)

    if (session.get("version") or 0) < SESSION_VERSION:
        session["version"] = SESSION_VERSION
    return session
