"""Pydantic models describing prompt and schema presets."""

from __future__ import annotations

from typing import List, Literal

from pydantic import Field, field_validator

from ..constants import PRESET_VERSION, StageName
from ..models import StoredModel, StructuredOutputSchema, now_ms

PresetType = Literal["prompt", "schema"]


class BasePreset(StoredModel):
    """Fields shared by every preset kind."""

    id: str
    name: str
    stages: List[StageName] = Field(default_factory=list)  # empty = all stages
    is_builtin: bool = False
    version: int = PRESET_VERSION
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name must be a non-empty string")
        if len(v) > 100:
            raise ValueError("name must be 100 characters or less")
        return v

    def applies_to(self, stage: StageName) -> bool:
        return not self.stages or stage in self.stages


class PromptPreset(BasePreset):
    """A saved prompt template."""

    prompt: str


class SchemaPreset(BasePreset):
    """A saved structured output schema."""

    output_schema: StructuredOutputSchema = Field(alias="schema")
