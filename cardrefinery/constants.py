"""Shared constants for the refinery core."""

from __future__ import annotations

from typing import Literal, get_args

StageName = Literal["score", "rewrite", "analyze"]

# Document order of the pipeline.
STAGES: tuple[StageName, ...] = get_args(StageName)

STAGE_LABELS: dict[str, str] = {
    "score": "Score",
    "rewrite": "Rewrite",
    "analyze": "Analyze",
}

# Bump when the Session / SessionIndex storage layout changes.
STORAGE_VERSION = 3

# Bump when the shape of a single Session record changes.
SESSION_VERSION = 2

# Bump when PromptPreset / SchemaPreset shape changes.
PRESET_VERSION = 1

MAX_SESSIONS_PER_CHARACTER = 50
MAX_HISTORY_ENTRIES = 100

STORAGE_NAMESPACE = "cardrefinery"
# single blob holding every session, split into per-session keys at version 3
SESSIONS_KEY = "sessions"
SESSION_KEY_PREFIX = "session:"
SESSION_INDEX_KEY = "session_index"
STORAGE_META_KEY = "storage_meta"

StageStatus = Literal["pending", "running", "complete", "error"]
SessionStatus = Literal["active", "completed", "abandoned"]
