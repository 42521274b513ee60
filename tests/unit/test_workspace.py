"""Tests for the editing workspace."""

import pytest

from cardrefinery.errors import NotFoundError
from cardrefinery.models import StageConfig
from cardrefinery.workspace import Workspace


@pytest.fixture
def workspace(repository, engine, notifier):
    return Workspace(
        repository,
        engine,
        stage_defaults={"score": StageConfig(prompt_preset_id="builtin_score_quick")},
        notifier=notifier,
    )


@pytest.mark.asyncio
async def test_set_document_selects_populated_fields_without_a_session(workspace, v2_card):
    sessions = await workspace.set_document("alice.png", v2_card)

    assert sessions == []
    assert workspace.session is None
    assert workspace.selection_for("score")["description"] is True
    assert "scenario" not in workspace.selection_for("score")
    assert workspace.configs["score"].prompt_preset_id == "builtin_score_quick"
    assert workspace.configs["rewrite"].prompt_preset_id == "builtin_rewrite_default"
    assert workspace.stage_status() == {"score": "pending", "rewrite": "pending", "analyze": "pending"}


@pytest.mark.asyncio
async def test_first_selection_change_creates_a_session(workspace, repository, v2_card):
    events = []
    workspace.events.subscribe(events.append)
    await workspace.set_document("alice.png", v2_card)
    await workspace.set_user_guidance("  Darker tone ")

    selection = await workspace.toggle_field("alternate_greetings", [2, 0, 7])

    assert selection["alternate_greetings"] == [2, 0]
    session = workspace.session
    assert session is not None
    assert session.user_guidance == "Darker tone"
    assert session.original_data["description"].startswith("A curious girl")
    assert [s.id for s in workspace.sessions] == [session.id]
    assert (await repository.get(session.id)).stage_fields.base["alternate_greetings"] == [2, 0]
    assert [e.type for e in events] == ["guidance_changed", "session_saved", "selection_changed"]


@pytest.mark.asyncio
async def test_unlinked_selection_is_per_stage(workspace, v2_card):
    await workspace.set_document("alice.png", v2_card)
    await workspace.set_linked(False)
    workspace.set_active_stage("rewrite")
    await workspace.toggle_field("description", False)

    assert "description" not in workspace.selection_for("rewrite")
    assert workspace.selection_for("score")["description"] is True

    await workspace.set_linked(True)
    assert "description" not in workspace.selection_for("score")


@pytest.mark.asyncio
async def test_run_stage_uses_active_stage_config(workspace, generator, v2_card):
    await workspace.set_document("alice.png", v2_card)
    generator.replies = ["7/10"]

    result = await workspace.run_stage()

    assert result.output == "7/10"
    assert "Give a quick assessment" in generator.requests[0].user_prompt
    assert "Alice's rabbit" in generator.requests[0].user_prompt
    assert workspace.stage_status()["score"] == "complete"


@pytest.mark.asyncio
async def test_run_without_document_notifies(workspace, notifier, generator):
    assert await workspace.run_stage() is None
    assert await workspace.run_pipeline() == []
    assert generator.requests == []
    assert notifier.errors == ["Select a character first", "Select a character first"]


@pytest.mark.asyncio
async def test_update_stage_config_persists(workspace, repository, v2_card):
    await workspace.set_document("alice.png", v2_card)
    await workspace.ensure_active_session()

    updated = await workspace.update_stage_config("rewrite", custom_prompt="Shorter", prompt_preset_id=None)

    assert updated.custom_prompt == "Shorter"
    stored = await repository.get(workspace.session.id)
    assert stored.configs["rewrite"].custom_prompt == "Shorter"
    assert stored.configs["rewrite"].prompt_preset_id is None


@pytest.mark.asyncio
async def test_load_new_and_delete_sessions(workspace, v2_card, v1_card):
    await workspace.set_document("alice.png", v2_card)
    first = await workspace.ensure_active_session()
    second = await workspace.new_session()
    assert second.id != first.id
    assert second.stage_fields == first.stage_fields

    loaded = await workspace.load_session(first.id)
    assert loaded.id == first.id

    await workspace.set_document("bob.png", v1_card)
    with pytest.raises(NotFoundError):
        await workspace.load_session(first.id)
    await workspace.load_session(first.id, document=v2_card)
    assert workspace.character_id == "alice.png"

    assert await workspace.delete_session(first.id)
    assert workspace.session is None
    assert workspace.selection_for("score") == first.stage_fields.base
    assert [s.id for s in workspace.sessions] == [second.id]

    assert await workspace.delete_all_sessions() == 1
    assert workspace.sessions == []


@pytest.mark.asyncio
async def test_rename_and_status(workspace, repository, v2_card):
    await workspace.set_document("alice.png", v2_card)
    session = await workspace.ensure_active_session()

    await workspace.rename_session(session.id, "Take two")
    assert workspace.session.name == "Take two"

    await workspace.set_status("completed")
    assert (await repository.get(session.id)).status == "completed"


@pytest.mark.asyncio
async def test_deleting_sessions_drops_their_cached_status(workspace, engine, v2_card):
    await workspace.set_document("alice.png", v2_card)
    first = await workspace.ensure_active_session()
    await workspace.run_stage("score")
    second = await workspace.new_session()
    await workspace.run_stage("score")
    assert first.id not in engine._status
    assert second.id in engine._status

    await workspace.load_session(first.id)
    await workspace.run_stage("score")
    assert await workspace.delete_session(second.id)
    assert set(engine._status) == {first.id}

    assert await workspace.delete_all_sessions() == 1
    assert engine._status == {}

    # nothing active: deleting again is a no-op
    assert await workspace.delete_all_sessions() == 0
    assert workspace.session is None
