"""Tests for the session repository."""

import asyncio
import json

import pytest

from cardrefinery.errors import NotFoundError
from cardrefinery.models import StageFieldSelection, StageResult
from cardrefinery.persistence import SessionRepository, VersionedStore
from cardrefinery.storage.sqlite import SQLiteKeyValueStore


@pytest.mark.asyncio
async def test_create_and_get(repository, kv_store):
    fields = StageFieldSelection(base={"description": True})
    session = await repository.create("alice.png", "Alice", stage_fields=fields)

    loaded = await repository.get(session.id)
    assert loaded.character_name == "Alice"
    assert loaded.stage_fields.base == {"description": True}
    assert loaded.status == "active"
    assert set(loaded.stage_results) == {"score", "rewrite", "analyze"}

    index = json.loads(await kv_store.get("session_index"))
    assert index == {"alice.png": [session.id]}
    assert await repository.get("missing") is None


@pytest.mark.asyncio
async def test_list_for_character_newest_first(repository):
    first = await repository.create("alice.png", "Alice")
    second = await repository.create("alice.png", "Alice")
    await repository.create("bob.png", "Bob")
    await repository.save(first)

    listed = await repository.list_for_character("alice.png")
    assert [s.id for s in listed] == [first.id, second.id]
    assert set(await repository.list_all()) == {"alice.png", "bob.png"}


@pytest.mark.asyncio
async def test_save_bumps_updated_at_monotonically(repository):
    session = await repository.create("alice.png", "Alice")
    session.updated_at += 60_000
    previous = session.updated_at
    await repository.save(session)
    assert session.updated_at == previous + 1


@pytest.mark.asyncio
async def test_cap_evicts_inactive_sessions_first(kv_store):
    repository = SessionRepository(VersionedStore(kv_store), max_sessions_per_character=2)
    oldest = await repository.create("alice.png", "Alice")
    done = await repository.create("alice.png", "Alice")
    done.status = "completed"
    await repository.save(done)

    newest = await repository.create("alice.png", "Alice")
    ids = {s.id for s in await repository.list_for_character("alice.png")}
    assert ids == {oldest.id, newest.id}


@pytest.mark.asyncio
async def test_cap_never_evicts_the_saved_session(kv_store):
    repository = SessionRepository(VersionedStore(kv_store), max_sessions_per_character=2)
    first = await repository.create("alice.png", "Alice")
    second = await repository.create("alice.png", "Alice")
    third = await repository.create("alice.png", "Alice")
    assert await repository.get(first.id) is None

    # saving an evicted session brings it back and evicts the next oldest
    await repository.save(first)
    ids = {s.id for s in await repository.list_for_character("alice.png")}
    assert ids == {first.id, third.id}
    assert await repository.get(second.id) is None


@pytest.mark.asyncio
async def test_history_is_trimmed(kv_store):
    repository = SessionRepository(VersionedStore(kv_store), max_history_entries=3)
    session = await repository.create("alice.png", "Alice")
    for i in range(5):
        await repository.append_result(session, StageResult(stage="score", output=f"r{i}"))

    loaded = await repository.get(session.id)
    assert [r.output for r in loaded.history] == ["r2", "r3", "r4"]
    assert loaded.stage_results["score"].output == "r4"


@pytest.mark.asyncio
async def test_inconsistent_storage_is_repaired(repository, kv_store):
    def record(session_id, character_id):
        return {"id": session_id, "characterId": character_id, "characterName": "X"}

    await kv_store.set("session:s1", json.dumps(record("s1", "a")))
    await kv_store.set("session:s2", json.dumps(record("s2", "b")))
    await kv_store.set("session:broken", json.dumps("oops"))
    await kv_store.set(
        "session_index",
        json.dumps({"a": ["s1", "ghost", "s1"], "c": ["s1"], "weird": "value"}),
    )

    grouped = await repository.list_all()
    assert {k: [s.id for s in v] for k, v in grouped.items()} == {"a": ["s1"], "b": ["s2"]}
    assert json.loads(await kv_store.get("session_index")) == {"a": ["s1"], "b": ["s2"]}
    # unreadable records are skipped, not removed
    assert json.loads(await kv_store.get("session:broken")) == "oops"


@pytest.mark.asyncio
async def test_unreadable_session_is_kept_in_storage(repository, kv_store):
    good = {"id": "s1", "characterId": "a", "characterName": "A"}
    archived = {
        "id": "s2",
        "characterId": "a",
        "characterName": "A",
        "status": "archived",
        "userGuidance": "keep me",
    }
    newer = {"id": "s3", "characterId": "a", "characterName": "A", "version": 99}
    await kv_store.set("session:s1", json.dumps(good))
    await kv_store.set("session:s2", json.dumps(archived))
    await kv_store.set("session:s3", json.dumps(newer))
    await kv_store.set("session_index", json.dumps({"a": ["s1"]}))

    listed = await repository.list_for_character("a")
    assert [s.id for s in listed] == ["s1"]
    assert await repository.get("s3") is None

    # saving a readable sibling leaves the others as they were
    session = await repository.get("s1")
    session.user_guidance = "changed"
    await repository.save(session)
    assert json.loads(await kv_store.get("session:s2")) == archived
    assert json.loads(await kv_store.get("session:s3")) == newer
    index = json.loads(await kv_store.get("session_index"))
    assert set(index["a"]) == {"s1", "s2", "s3"}

    # an explicit delete still removes it
    assert await repository.delete("s2")
    assert await kv_store.get("session:s2") is None


@pytest.mark.asyncio
async def test_unreadable_sessions_do_not_count_towards_the_cap(kv_store):
    repository = SessionRepository(VersionedStore(kv_store), max_sessions_per_character=1)
    newer = {"id": "future", "characterId": "alice.png", "characterName": "A", "version": 99}
    await kv_store.set("session:future", json.dumps(newer))

    session = await repository.create("alice.png", "Alice")
    assert [s.id for s in await repository.list_for_character("alice.png")] == [session.id]
    assert await kv_store.get("session:future") is not None


@pytest.mark.asyncio
async def test_lost_index_is_rebuilt_from_session_keys(repository, kv_store):
    first = await repository.create("alice.png", "Alice")
    second = await repository.create("bob.png", "Bob")
    await kv_store.remove("session_index")

    grouped = await repository.list_all()
    assert {k: [s.id for s in v] for k, v in grouped.items()} == {
        "alice.png": [first.id],
        "bob.png": [second.id],
    }


@pytest.mark.asyncio
async def test_repositories_sharing_a_database_keep_each_others_sessions(tmp_path):
    db_path = tmp_path / "shared.db"
    first = SessionRepository(VersionedStore(SQLiteKeyValueStore(db_path)))
    second = SessionRepository(VersionedStore(SQLiteKeyValueStore(db_path)))

    alice, bob = await asyncio.gather(
        first.create("alice.png", "Alice"), second.create("bob.png", "Bob")
    )
    alice_two, bob_two = await asyncio.gather(
        first.create("alice.png", "Alice"), second.create("bob.png", "Bob")
    )

    reader = SessionRepository(VersionedStore(SQLiteKeyValueStore(db_path)))
    grouped = await reader.list_all()
    assert {s.id for s in grouped["alice.png"]} == {alice.id, alice_two.id}
    assert {s.id for s in grouped["bob.png"]} == {bob.id, bob_two.id}


@pytest.mark.asyncio
async def test_delete_rename_and_purge(repository):
    first = await repository.create("alice.png", "Alice")
    second = await repository.create("alice.png", "Alice")
    await repository.create("bob.png", "Bob")

    assert await repository.delete(first.id)
    assert not await repository.delete(first.id)

    renamed = await repository.rename(second.id, "  Draft 2 ")
    assert renamed.name == "Draft 2"
    assert (await repository.rename(second.id, "   ")).name is None
    with pytest.raises(NotFoundError):
        await repository.rename(first.id, "gone")

    assert await repository.delete_all_for_character("alice.png") == 1
    assert await repository.delete_all_for_character("alice.png") == 0
    assert await repository.purge_all() == 1
    assert await repository.list_all() == {}


@pytest.mark.asyncio
async def test_concurrent_creates_are_all_indexed(repository):
    created = await asyncio.gather(
        *(repository.create("alice.png", "Alice") for _ in range(5))
    )
    listed = await repository.list_for_character("alice.png")
    assert {s.id for s in listed} == {s.id for s in created}


@pytest.mark.asyncio
async def test_degraded_storage_keeps_sessions_in_memory(kv_store, notifier):
    await kv_store.set("storage_meta", json.dumps({"version": 99}))
    repository = SessionRepository(VersionedStore(kv_store), notifier=notifier)

    session = await repository.create("alice.png", "Alice")
    assert repository.degraded
    assert (await repository.get(session.id)).id == session.id
    await repository.append_result(session, StageResult(stage="score", output="8"))
    assert (await repository.get(session.id)).stage_results["score"].output == "8"

    assert await kv_store.keys() == ["storage_meta"]
    assert len(notifier.errors) == 1
    assert "version 99" in notifier.errors[0]
