"""Data models for persisted refinement sessions."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .constants import SESSION_VERSION, STAGES, SessionStatus, StageName

# key -> whole field (True) or selected indices of an array field
FieldSelection = Dict[str, Union[bool, List[int]]]

# character id -> session ids
SessionIndex = Dict[str, List[str]]


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class StoredModel(BaseModel):
    """Base for records persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FieldSchema(BaseModel):
    """Definition of a document field that can be extracted and refined."""

    model_config = ConfigDict(frozen=True)

    key: str
    label: str
    path: str
    type: Optional[Literal["string", "array", "object"]] = None


class PopulatedField(BaseModel):
    """A document field with its extracted and formatted value."""

    key: str
    label: str
    value: str
    raw_value: Any = None
    char_count: int = 0
    type: Optional[Literal["string", "array", "object"]] = None


class StageFieldSelection(StoredModel):
    """Per-stage field selections with linking support."""

    base: FieldSelection = Field(default_factory=dict)
    linked: bool = True
    overrides: Dict[StageName, FieldSelection] = Field(default_factory=dict)


class StageConfig(StoredModel):
    """Configuration for a single pipeline stage."""

    prompt_preset_id: Optional[str] = None
    custom_prompt: str = ""
    schema_preset_id: Optional[str] = None
    custom_schema: str = ""
    use_structured_output: bool = False


class StageResult(StoredModel):
    """Outcome of one stage run. Exactly one of ``output``/``error`` is set."""

    model_config = ConfigDict(frozen=True)

    stage: StageName
    timestamp: int = Field(default_factory=now_ms)
    input: str = ""
    output: Optional[str] = None
    guidance: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_placeholder_output(cls, data: Any) -> Any:
        # older records stored failed runs with an empty output string
        if isinstance(data, dict) and data.get("error") and data.get("output") == "":
            data = {k: v for k, v in data.items() if k != "output"}
        return data

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.output is not None


def default_stage_configs() -> Dict[StageName, StageConfig]:
    return {stage: StageConfig() for stage in STAGES}


def empty_stage_results() -> Dict[StageName, Optional[StageResult]]:
    return {stage: None for stage in STAGES}


class Session(StoredModel):
    """A saved work session for one character."""

    id: str
    character_id: str
    character_name: str
    name: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    stage_fields: StageFieldSelection = Field(default_factory=StageFieldSelection)
    original_data: Dict[str, str] = Field(default_factory=dict)
    configs: Dict[StageName, StageConfig] = Field(default_factory=default_stage_configs)
    stage_results: Dict[StageName, Optional[StageResult]] = Field(
        default_factory=empty_stage_results
    )
    history: List[StageResult] = Field(default_factory=list)
    iteration_count: int = 0
    user_guidance: Optional[str] = None
    status: SessionStatus = "active"
    version: int = SESSION_VERSION

    def config_for(self, stage: StageName) -> StageConfig:
        return self.configs.get(stage) or StageConfig()

    def to_blob(self) -> dict[str, Any]:
        # stageResults keeps explicit nulls so "never ran" survives a round trip
        blob = super().to_blob()
        blob["stageResults"] = {
            stage: (result.to_blob() if result else None)
            for stage, result in self.stage_results.items()
        }
        return blob


class StructuredOutputSchema(BaseModel):
    """Schema wrapper sent to the backend for structured output."""

    name: str
    strict: Optional[bool] = None
    value: Dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StorageMeta(StoredModel):
    """Storage metadata used to drive migrations."""

    version: int
    last_migration: int = Field(default_factory=now_ms)
