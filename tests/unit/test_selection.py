"""Tests for per-stage field selection."""

from cardrefinery.constants import STAGES
from cardrefinery.models import StageFieldSelection
from cardrefinery.selection import (
    effective_selection,
    select_populated,
    set_linked,
    set_selection,
    toggle_field,
)


def test_linked_selection_ignores_overrides():
    fields = StageFieldSelection(
        base={"description": True},
        linked=True,
        overrides={"rewrite": {"personality": True}},
    )
    for stage in STAGES:
        assert effective_selection(fields, stage) == {"description": True}


def test_unlinked_selection_prefers_override_then_base():
    fields = StageFieldSelection(
        base={"description": True},
        linked=False,
        overrides={"rewrite": {"personality": True}},
    )
    assert effective_selection(fields, "rewrite") == {"personality": True}
    assert effective_selection(fields, "score") == {"description": True}


def test_set_selection_returns_new_value():
    fields = StageFieldSelection(base={"description": True})
    updated = set_selection(fields, "score", {"personality": True})
    assert fields.base == {"description": True}
    assert updated.base == {"personality": True}

    unlinked = StageFieldSelection(base={"description": True}, linked=False)
    updated = set_selection(unlinked, "analyze", {"scenario": True})
    assert updated.base == {"description": True}
    assert updated.overrides == {"analyze": {"scenario": True}}


def test_unlinking_snapshots_every_stage():
    fields = StageFieldSelection(base={"description": True, "alternate_greetings": [0, 2]})
    unlinked = set_linked(fields, False, "score")
    assert not unlinked.linked
    for stage in STAGES:
        assert unlinked.overrides[stage] == fields.base
    unlinked.overrides["score"]["alternate_greetings"].append(5)
    assert fields.base["alternate_greetings"] == [0, 2]


def test_linking_adopts_active_stage_and_drops_overrides():
    fields = StageFieldSelection(
        base={"description": True},
        linked=False,
        overrides={"rewrite": {"personality": True}, "score": {"scenario": True}},
    )
    linked = set_linked(fields, True, "rewrite")
    assert linked.linked
    assert linked.base == {"personality": True}
    assert linked.overrides == {}


def test_link_round_trip_preserves_active_selection():
    fields = StageFieldSelection(
        base={"description": True},
        linked=False,
        overrides={"analyze": {"first_mes": True, "alternate_greetings": [1]}},
    )
    before = effective_selection(fields, "analyze")
    round_trip = set_linked(set_linked(fields, True, "analyze"), False, "analyze")
    assert effective_selection(round_trip, "analyze") == before


def test_toggle_field_adds_and_removes():
    fields = StageFieldSelection()
    fields = toggle_field(fields, "score", "description", True)
    assert fields.base == {"description": True}
    fields = toggle_field(fields, "score", "description", False)
    assert fields.base == {}


def test_toggle_field_clamps_indices_to_document(v2_card):
    fields = toggle_field(
        StageFieldSelection(), "score", "alternate_greetings", [2, 0, 2, 9], document=v2_card
    )
    assert fields.base == {"alternate_greetings": [2, 0]}

    fields = toggle_field(fields, "score", "alternate_greetings", [7], document=v2_card)
    assert "alternate_greetings" not in fields.base


def test_toggle_field_writes_override_when_unlinked():
    fields = StageFieldSelection(base={"description": True}, linked=False)
    fields = toggle_field(fields, "rewrite", "personality", True)
    assert fields.base == {"description": True}
    assert fields.overrides["rewrite"] == {"description": True, "personality": True}


def test_select_populated(v2_card):
    selection = select_populated(v2_card)
    assert selection["description"] is True
    assert "scenario" not in selection
    assert select_populated(None) == {}
