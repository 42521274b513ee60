"""Per-stage field selection with linking.

All functions are pure: they take a :class:`StageFieldSelection` and return
a new one, leaving the input untouched.
"""

from __future__ import annotations

import copy
from typing import Any, List, Mapping, Optional, Sequence, Union

from .constants import STAGES, StageName
from .fields import CHARACTER_FIELDS, get_by_path_with_fallback, get_populated_fields
from .models import FieldSchema, FieldSelection, StageFieldSelection


def effective_selection(
    stage_fields: StageFieldSelection, stage: StageName
) -> FieldSelection:
    """Selection that applies to ``stage``.

    Linked selections always resolve to ``base``; otherwise the stage's
    override wins and ``base`` is the fallback.
    """
    if stage_fields.linked:
        return copy.deepcopy(stage_fields.base)
    override = stage_fields.overrides.get(stage)
    return copy.deepcopy(override if override is not None else stage_fields.base)


def set_selection(
    stage_fields: StageFieldSelection, stage: StageName, selection: FieldSelection
) -> StageFieldSelection:
    """Replace the selection for ``stage`` (the shared base when linked)."""
    updated = stage_fields.model_copy(deep=True)
    if updated.linked:
        updated.base = copy.deepcopy(selection)
    else:
        updated.overrides[stage] = copy.deepcopy(selection)
    return updated


def set_linked(
    stage_fields: StageFieldSelection, linked: bool, active_stage: StageName
) -> StageFieldSelection:
    """Switch linking on or off.

    Linking adopts the active stage's effective selection as the new base
    and discards overrides. Unlinking snapshots the current effective
    selection into an override for every stage.
    """
    if stage_fields.linked == linked:
        return stage_fields.model_copy(deep=True)

    if linked:
        return StageFieldSelection(
            base=effective_selection(stage_fields, active_stage),
            linked=True,
            overrides={},
        )

    return StageFieldSelection(
        base=copy.deepcopy(stage_fields.base),
        linked=False,
        overrides={stage: effective_selection(stage_fields, stage) for stage in STAGES},
    )


def _array_length(
    document: Mapping[str, Any], key: str, schema: Sequence[FieldSchema]
) -> Optional[int]:
    field = next((f for f in schema if f.key == key), None)
    if field is None or field.type != "array":
        return None
    value = get_by_path_with_fallback(document, field.path)
    return len(value) if isinstance(value, list) else 0


def toggle_field(
    stage_fields: StageFieldSelection,
    stage: StageName,
    key: str,
    value: Union[bool, List[int]],
    document: Optional[Mapping[str, Any]] = None,
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> StageFieldSelection:
    """Select or deselect one field for ``stage``.

    ``False`` or an empty index list removes the key. Index lists are
    clamped to the entries present in ``document`` when one is given.
    """
    selection = effective_selection(stage_fields, stage)

    if isinstance(value, list):
        indices = list(dict.fromkeys(value))
        if document is not None:
            length = _array_length(document, key, schema)
            if length is not None:
                indices = [i for i in indices if 0 <= i < length]
        if indices:
            selection[key] = indices
        else:
            selection.pop(key, None)
    elif value:
        selection[key] = True
    else:
        selection.pop(key, None)

    return set_selection(stage_fields, stage, selection)


def select_populated(
    document: Optional[Mapping[str, Any]],
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> FieldSelection:
    """Selection with every populated field of ``document`` switched on."""
    return {field.key: True for field in get_populated_fields(document, schema)}
