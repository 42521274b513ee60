"""Sessions survive a restart on the SQLite backend."""

import json

import pytest

from cardrefinery.constants import STORAGE_VERSION
from cardrefinery.engine import PipelineEngine
from cardrefinery.persistence import SessionRepository, VersionedStore
from cardrefinery.storage import SQLiteKeyValueStore
from cardrefinery.workspace import Workspace


def _workspace(db_path, generator):
    repository = SessionRepository(VersionedStore(SQLiteKeyValueStore(db_path)))
    return Workspace(repository, PipelineEngine(repository, generator))


@pytest.mark.asyncio
async def test_session_restart_and_reload(tmp_path, v2_card, generator):
    db_path = tmp_path / "refinery.db"
    generator.replies = ["8", "Rewritten", "ACCEPT"]

    workspace = _workspace(db_path, generator)
    await workspace.set_document("alice.png", v2_card)
    await workspace.toggle_field("first_mes", False)
    await workspace.run_pipeline()
    session_id = workspace.session.id

    # a new process sees the same data
    restarted = _workspace(db_path, generator)
    sessions = await restarted.set_document("alice.png", v2_card)
    assert [s.id for s in sessions] == [session_id]

    session = await restarted.load_session(session_id)
    assert "first_mes" not in session.stage_fields.base
    assert session.iteration_count == 3
    assert session.stage_results["analyze"].output == "ACCEPT"
    assert restarted.stage_status() == {
        "score": "complete",
        "rewrite": "complete",
        "analyze": "complete",
    }

    generator.replies = ["9"]
    await restarted.run_stage("score")
    reloaded = await _workspace(db_path, generator).load_session(session_id, document=v2_card)
    assert len(reloaded.history) == 4
    assert reloaded.stage_results["score"].output == "9"


@pytest.mark.asyncio
async def test_legacy_database_is_migrated_on_open(tmp_path):
    db_path = tmp_path / "legacy.db"
    backend = SQLiteKeyValueStore(db_path)
    await backend.set("storage_meta", json.dumps({"version": 1, "lastMigration": 0}))
    await backend.set(
        "sessions",
        json.dumps(
            {
                "old": {
                    "id": "old",
                    "characterId": "alice.png",
                    "characterName": "Alice",
                    "selectedFields": {"description": True},
                    "history": [{"stage": "score", "timestamp": 5, "input": "x", "output": "6"}],
                }
            }
        ),
    )
    await backend.set("session_index", json.dumps({"alice.png": ["old"]}))

    repository = SessionRepository(VersionedStore(SQLiteKeyValueStore(db_path)))
    session = await repository.get("old")

    assert session.stage_fields.base == {"description": True}
    assert session.stage_results["score"].output == "6"
    assert json.loads(await backend.get("storage_meta"))["version"] == STORAGE_VERSION
    assert await backend.get("sessions") is None
    assert await backend.keys() == ["session:old", "session_index", "storage_meta"]
