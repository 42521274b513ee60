"""Prompt and schema preset registry."""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Union

from ..constants import StageName
from ..errors import ValidationError
from ..models import StageConfig, StructuredOutputSchema
from ..schema import validate_schema
from .builtins import (
    BASE_REFINEMENT_PROMPT,
    BASE_SYSTEM_PROMPT,
    BUILTIN_PROMPT_PRESETS,
    BUILTIN_SCHEMA_PRESETS,
    DEFAULT_STAGE_PROMPT_PRESETS,
)
from .models import BasePreset, PresetType, PromptPreset, SchemaPreset

logger = logging.getLogger(__name__)


class PresetRegistry:
    """Lookup table for prompt and schema presets.

    Builtin presets are always present and cannot be replaced or deleted.
    User presets are added at runtime or loaded from configuration.
    """

    def __init__(
        self,
        prompt_presets: Iterable[PromptPreset] = (),
        schema_presets: Iterable[SchemaPreset] = (),
    ) -> None:
        self._prompts: Dict[str, PromptPreset] = {p.id: p for p in BUILTIN_PROMPT_PRESETS}
        self._schemas: Dict[str, SchemaPreset] = {p.id: p for p in BUILTIN_SCHEMA_PRESETS}
        for preset in prompt_presets:
            self.add_prompt_preset(preset)
        for preset in schema_presets:
            self.add_schema_preset(preset)

    # -- lookup -----------------------------------------------------------

    def get_prompt_preset(self, preset_id: Optional[str]) -> Optional[PromptPreset]:
        if not preset_id:
            return None
        return self._prompts.get(preset_id)

    def get_schema_preset(self, preset_id: Optional[str]) -> Optional[SchemaPreset]:
        if not preset_id:
            return None
        return self._schemas.get(preset_id)

    def list_prompt_presets(self, stage: Optional[StageName] = None) -> List[PromptPreset]:
        return _filter(self._prompts.values(), stage)

    def list_schema_presets(self, stage: Optional[StageName] = None) -> List[SchemaPreset]:
        return _filter(self._schemas.values(), stage)

    # -- mutation ---------------------------------------------------------

    def add_prompt_preset(self, preset: PromptPreset) -> PromptPreset:
        self._guard_builtin(self._prompts.get(preset.id))
        if not preset.prompt.strip():
            raise ValidationError(f"Prompt preset '{preset.name}' has an empty prompt")
        preset = preset.model_copy(update={"is_builtin": False})
        self._prompts[preset.id] = preset
        logger.debug(f"Registered prompt preset {preset.id}")
        return preset

    def add_schema_preset(self, preset: SchemaPreset) -> SchemaPreset:
        self._guard_builtin(self._schemas.get(preset.id))
        result = validate_schema(preset.output_schema)
        if not result.valid:
            raise ValidationError(f"Schema preset '{preset.name}': {result.error}")
        preset = preset.model_copy(update={"is_builtin": False})
        self._schemas[preset.id] = preset
        logger.debug(f"Registered schema preset {preset.id}")
        return preset

    def register_prompt_preset(
        self, name: str, prompt: str, stages: Iterable[StageName] = ()
    ) -> PromptPreset:
        """Create a new user prompt preset with a generated id."""
        return self.add_prompt_preset(
            PromptPreset(
                id=f"user_prompt_{uuid.uuid4().hex[:12]}",
                name=name,
                stages=list(stages),
                prompt=prompt,
            )
        )

    def register_schema_preset(
        self,
        name: str,
        schema: Union[str, dict, StructuredOutputSchema],
        stages: Iterable[StageName] = (),
    ) -> SchemaPreset:
        """Create a new user schema preset from JSON text or a mapping."""
        result = validate_schema(schema)
        if not result.valid or result.parsed is None:
            raise ValidationError(result.error or "Schema is required")
        return self.add_schema_preset(
            SchemaPreset(
                id=f"user_schema_{uuid.uuid4().hex[:12]}",
                name=name,
                stages=list(stages),
                schema=result.parsed,
            )
        )

    def delete_preset(self, kind: PresetType, preset_id: str) -> bool:
        """Remove a user preset. Returns ``False`` if it did not exist."""
        table: Dict[str, BasePreset] = self._prompts if kind == "prompt" else self._schemas  # type: ignore[assignment]
        preset = table.get(preset_id)
        if preset is None:
            return False
        self._guard_builtin(preset)
        del table[preset_id]
        logger.debug(f"Deleted {kind} preset {preset_id}")
        return True

    @staticmethod
    def _guard_builtin(preset: Optional[BasePreset]) -> None:
        if preset is not None and preset.is_builtin:
            raise ValidationError(f"Builtin preset {preset.id} cannot be modified")

    # -- resolution -------------------------------------------------------

    def resolve_prompt(self, preset_id: Optional[str], custom_prompt: str = "") -> str:
        """Return the prompt text for a stage configuration.

        A preset id that resolves wins over custom text. An unknown id falls
        back to the custom text.
        """
        preset = self.get_prompt_preset(preset_id)
        if preset is not None:
            return preset.prompt
        if preset_id:
            logger.warning(f"Prompt preset {preset_id} not found, using custom prompt")
        return custom_prompt.strip()

    def resolve_schema(
        self, preset_id: Optional[str], custom_schema: str = ""
    ) -> Optional[StructuredOutputSchema]:
        """Return the structured output schema for a stage configuration.

        Raises :class:`ValidationError` when only custom text is available
        and it does not describe a valid schema.
        """
        preset = self.get_schema_preset(preset_id)
        if preset is not None:
            return preset.output_schema
        if preset_id:
            logger.warning(f"Schema preset {preset_id} not found, using custom schema")
        if not custom_schema.strip():
            return None
        result = validate_schema(custom_schema)
        if not result.valid:
            raise ValidationError(f"Invalid schema: {result.error}")
        return result.parsed

    def stage_prompt(self, config: StageConfig) -> str:
        return self.resolve_prompt(config.prompt_preset_id, config.custom_prompt)

    def stage_schema(self, config: StageConfig) -> Optional[StructuredOutputSchema]:
        if not config.use_structured_output:
            return None
        return self.resolve_schema(config.schema_preset_id, config.custom_schema)


def _filter(presets: Iterable[BasePreset], stage: Optional[StageName]) -> list:
    items = [p for p in presets if stage is None or p.applies_to(stage)]
    # builtins first, then user presets by name
    return sorted(items, key=lambda p: (not p.is_builtin, p.name.lower()))


__all__ = [
    "BASE_REFINEMENT_PROMPT",
    "BASE_SYSTEM_PROMPT",
    "BUILTIN_PROMPT_PRESETS",
    "BUILTIN_SCHEMA_PRESETS",
    "DEFAULT_STAGE_PROMPT_PRESETS",
    "PresetRegistry",
    "PresetType",
    "PromptPreset",
    "SchemaPreset",
]
