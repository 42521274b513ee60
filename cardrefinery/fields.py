"""Field extraction and formatting for character documents.

Supports both V1 (top-level) and V2 (nested ``data.*``) character card
layouts. Extraction never fails: missing or malformed paths produce empty
values so partially loaded documents can still be worked on.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .models import FieldSchema, FieldSelection, PopulatedField

logger = logging.getLogger(__name__)

CHARACTER_FIELDS: tuple[FieldSchema, ...] = (
    FieldSchema(key="description", label="Description", path="description"),
    FieldSchema(key="personality", label="Personality", path="personality"),
    FieldSchema(key="first_mes", label="First Message", path="first_mes"),
    FieldSchema(key="scenario", label="Scenario", path="scenario"),
    FieldSchema(key="mes_example", label="Example Messages", path="mes_example"),
    FieldSchema(key="system_prompt", label="System Prompt", path="data.system_prompt"),
    FieldSchema(
        key="post_history_instructions",
        label="Post-History Instructions",
        path="data.post_history_instructions",
    ),
    FieldSchema(key="creator_notes", label="Creator Notes", path="data.creator_notes"),
    FieldSchema(
        key="alternate_greetings",
        label="Alternate Greetings",
        path="data.alternate_greetings",
        type="array",
    ),
    FieldSchema(
        key="depth_prompt",
        label="Depth Prompt",
        path="data.extensions.depth_prompt",
        type="object",
    ),
    FieldSchema(
        key="character_book",
        label="Character Lorebook",
        path="data.character_book",
        type="object",
    ),
)

LOREBOOK_PREVIEW_ENTRIES = 10


def get_by_path(obj: Any, path: str) -> Any:
    """Follow a dotted ``path`` through nested mappings."""
    current = obj
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def get_by_path_with_fallback(document: Any, path: str) -> Any:
    """Resolve ``path``, falling back to V1 top-level keys for ``data.*``."""
    value = get_by_path(document, path)

    if value is None and path.startswith("data."):
        top_level = path[len("data.") :]
        if top_level.startswith("extensions."):
            value = get_by_path(document, top_level)
            if value is None:
                value = get_by_path(document, top_level[len("extensions.") :])
        else:
            value = get_by_path(document, top_level)

    return value


def is_populated(value: Any, field_type: Optional[str] = None) -> bool:
    if value is None:
        return False
    if field_type == "array":
        return isinstance(value, list) and len(value) > 0
    if field_type == "object":
        if not isinstance(value, Mapping):
            return False
        if "prompt" in value:
            prompt = value.get("prompt")
            return isinstance(prompt, str) and bool(prompt.strip())
        if "entries" in value:
            entries = value.get("entries")
            return isinstance(entries, list) and len(entries) > 0
        return len(value) > 0
    return isinstance(value, str) and bool(value.strip())


def _format_depth_prompt(value: Mapping[str, Any]) -> str:
    prompt = value.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return ""
    depth = value.get("depth", 0)
    role = value.get("role", "system")
    return f"[Depth: {depth}, Role: {role}]\n{prompt.strip()}"


def _format_lorebook(value: Mapping[str, Any]) -> str:
    entries = value.get("entries")
    if not isinstance(entries, list) or not entries:
        return ""

    lines: List[str] = []
    if value.get("name"):
        lines.append(f"Lorebook: {value['name']}")
    lines.append(f"Entries: {len(entries)}")
    for entry in entries[:LOREBOOK_PREVIEW_ENTRIES]:
        if not isinstance(entry, Mapping):
            continue
        status = "✓" if entry.get("enabled", True) else "✗"
        keys = entry.get("keys") or []
        label = entry.get("comment") or ", ".join(str(k) for k in keys[:3])
        lines.append(f"  {status} {label}")
    if len(entries) > LOREBOOK_PREVIEW_ENTRIES:
        lines.append(f"  ... and {len(entries) - LOREBOOK_PREVIEW_ENTRIES} more")
    return "\n".join(lines)


def format_value(
    value: Any, field: FieldSchema, indices: Optional[Sequence[int]] = None
) -> str:
    """Format a raw field value as text according to its schema type.

    For array fields ``indices`` limits the output to the selected entries;
    numbering always follows the entry's position in the source array.
    """
    if value is None:
        return ""

    if field.type == "array":
        if not isinstance(value, list):
            return ""
        positions: Iterable[int] = (
            range(len(value))
            if indices is None
            else [i for i in indices if 0 <= i < len(value)]
        )
        return "\n".join(f"{i + 1}. {str(value[i]).strip()}" for i in positions)

    if field.type == "object":
        if not isinstance(value, Mapping):
            return ""
        if field.key == "depth_prompt":
            return _format_depth_prompt(value)
        if field.key == "character_book":
            return _format_lorebook(value)
        try:
            return json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            return "[Complex Object]"

    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (Mapping, list)):
        return ""
    return str(value)


def get_populated_fields(
    document: Optional[Mapping[str, Any]],
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> List[PopulatedField]:
    """Return every schema field that has content in ``document``."""
    if not document:
        return []

    result: List[PopulatedField] = []
    for field in schema:
        raw = get_by_path_with_fallback(document, field.path)
        if not is_populated(raw, field.type):
            continue
        formatted = format_value(raw, field)
        if not formatted:
            continue
        result.append(
            PopulatedField(
                key=field.key,
                label=field.label,
                value=formatted,
                raw_value=raw,
                char_count=len(formatted),
                type=field.type,
            )
        )
    return result


def resolve_fields(
    selection: FieldSelection,
    document: Optional[Mapping[str, Any]],
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> List[PopulatedField]:
    """Extract and format the selected fields in schema order."""
    resolved: List[PopulatedField] = []
    for field in schema:
        selected = selection.get(field.key)
        if not selected:
            continue

        raw = get_by_path_with_fallback(document or {}, field.path)
        indices = selected if isinstance(selected, list) else None
        try:
            value = format_value(raw, field, indices)
        except Exception:
            logger.warning(f"Could not format field {field.key}, using empty value")
            value = ""

        resolved.append(
            PopulatedField(
                key=field.key,
                label=field.label,
                value=value,
                raw_value=raw,
                char_count=len(value),
                type=field.type,
            )
        )
    return resolved


def build_character_summary(
    document: Optional[Mapping[str, Any]],
    selection: FieldSelection,
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> str:
    """Render the selected fields as a markdown block for prompting."""
    name = str((document or {}).get("name") or "Unknown")
    sections: List[str] = []

    for field in resolve_fields(selection, document, schema):
        if not field.value:
            continue
        if field.type == "array" and isinstance(selection.get(field.key), list):
            entries = field.raw_value
            body = "\n\n".join(
                f"**Greeting {i + 1}:**\n{str(entries[i]).strip()}"
                for i in selection[field.key]
                if 0 <= i < len(entries)
            )
            sections.append(f"### {field.label}\n\n{body}")
        else:
            sections.append(f"### {field.label}\n\n{field.value}")

    body = "\n\n".join(sections) if sections else "(No fields selected)"
    summary = f"# CHARACTER: {name}\n\n{body}"
    return summary.replace("{{char}}", name)


def build_original_data(
    document: Optional[Mapping[str, Any]],
    selection: FieldSelection,
    schema: Sequence[FieldSchema] = CHARACTER_FIELDS,
) -> dict[str, str]:
    """Snapshot the formatted values of the selected populated fields."""
    return {
        field.key: field.value
        for field in get_populated_fields(document, schema)
        if selection.get(field.key)
    }


def validate_document(document: Optional[Mapping[str, Any]]) -> List[str]:
    """Return a list of human readable problems with ``document``."""
    if not document:
        return ["No character provided"]

    issues: List[str] = []
    name = document.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append("Character has no name")
    if not get_populated_fields(document):
        issues.append("Character has no populated fields")
    return issues
