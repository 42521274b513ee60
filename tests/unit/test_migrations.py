"""Tests for storage and session record migrations."""

import pytest

from cardrefinery.constants import SESSION_VERSION, STORAGE_VERSION
from cardrefinery.errors import MigrationError
from cardrefinery.models import Session
from cardrefinery.persistence import migrate_session_blob, migrate_storage


def _legacy_blobs() -> dict:
    return {
        "sessions": {
            "s1": {
                "id": "s1",
                "characterId": "alice.png",
                "characterName": "Alice",
                "selectedFields": {"description": True, "alternate_greetings": [0]},
                "history": [],
            }
        },
        "session_index": {"alice.png": ["s1"]},
    }


def test_migrate_storage_converts_legacy_selection():
    blobs = _legacy_blobs()
    migrated = migrate_storage(blobs, from_version=1)

    assert "sessions" not in migrated
    assert migrated["session_index"] == {"alice.png": ["s1"]}
    session = migrated["session:s1"]
    assert "selectedFields" not in session
    assert session["stageFields"] == {
        "base": {"description": True, "alternate_greetings": [0]},
        "linked": True,
        "overrides": {},
    }
    # input is left untouched
    assert "selectedFields" in blobs["sessions"]["s1"]


def test_migrate_storage_is_idempotent():
    once = migrate_storage(_legacy_blobs(), from_version=0)
    twice = migrate_storage(once, from_version=1)
    assert twice == once
    assert migrate_storage(once, from_version=STORAGE_VERSION) == once


def test_failing_step_raises_migration_error():
    def broken(blobs):
        raise KeyError("sessions")

    with pytest.raises(MigrationError, match="1 -> 2"):
        migrate_storage({}, from_version=1, steps={1: broken})
    with pytest.raises(MigrationError, match="No migration step"):
        migrate_storage({}, from_version=0, to_version=2, steps={0: lambda b: b})


def test_session_blob_derives_results_from_history():
    blob = {
        "id": "s1",
        "characterId": "alice.png",
        "characterName": "Alice",
        "selectedFields": {"description": True},
        "history": [
            {"stage": "score", "timestamp": 1, "input": "a", "output": "5"},
            {"stage": "score", "timestamp": 2, "input": "a", "output": "7"},
            {"stage": "rewrite", "timestamp": 3, "input": "b", "output": "", "error": "boom"},
        ],
        "version": 1,
    }
    migrated = migrate_session_blob(blob)
    assert migrated["version"] == SESSION_VERSION
    assert migrated["stageResults"]["score"]["output"] == "7"
    assert migrated["stageResults"]["analyze"] is None
    assert migrate_session_blob(migrated) == migrated

    session = Session.model_validate(migrated)
    assert session.stage_fields.base == {"description": True}
    assert session.stage_results["rewrite"].error == "boom"
    assert session.stage_results["rewrite"].output is None


def test_sessions_blob_is_split_into_per_session_keys():
    blobs = {
        "sessions": {"s1": {"id": "s1"}, "s2": {"id": "s2"}},
        "session:s2": {"id": "s2", "name": "already moved"},
    }
    migrated = migrate_storage(blobs, from_version=2)
    assert migrated == {
        "session:s1": {"id": "s1"},
        "session:s2": {"id": "s2", "name": "already moved"},
    }
    # garbage in the legacy key is left for inspection
    assert migrate_storage({"sessions": "oops"}, from_version=2) == {"sessions": "oops"}


def test_session_blob_from_newer_build_is_rejected():
    blob = {"id": "s1", "characterId": "a", "characterName": "A", "version": SESSION_VERSION + 1}
    with pytest.raises(MigrationError, match="supports up to"):
        migrate_session_blob(blob)
