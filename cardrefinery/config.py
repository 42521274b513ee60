from __future__ import annotations

import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, PositiveInt, ValidationError as PydanticValidationError

from .constants import (
    MAX_HISTORY_ENTRIES,
    MAX_SESSIONS_PER_CHARACTER,
    STORAGE_NAMESPACE,
    StageName,
)
from .errors import ConfigError, ValidationError
from .models import StageConfig
from .registry import BASE_REFINEMENT_PROMPT, BASE_SYSTEM_PROMPT, PresetRegistry
from .registry.models import PromptPreset, SchemaPreset


class StorageConfig(BaseModel):
    """Key-value storage backend settings."""

    url: str = "memory://"
    key_prefix: str = STORAGE_NAMESPACE


class LimitsConfig(BaseModel):
    """Retention limits for sessions and history."""

    max_sessions_per_character: PositiveInt = MAX_SESSIONS_PER_CHARACTER
    max_history_entries: PositiveInt = MAX_HISTORY_ENTRIES


class PromptsConfig(BaseModel):
    """System prompts sent with every request."""

    base_system_prompt: str = BASE_SYSTEM_PROMPT
    user_system_prompt: str = ""
    stage_system_prompts: Dict[StageName, str] = Field(default_factory=dict)
    base_refinement_prompt: str = BASE_REFINEMENT_PROMPT
    user_refinement_prompt: str = ""


class PresetsConfig(BaseModel):
    """User presets loaded alongside the builtins."""

    prompts: List[PromptPreset] = Field(default_factory=list)
    schemas: List[SchemaPreset] = Field(default_factory=list)


class GenerationConfig(BaseModel):
    """Settings for the pydantic-ai generation backend."""

    model: str = "openai:gpt-4o-mini"
    max_tokens: Optional[PositiveInt] = None
    timeout_seconds: float = 120.0


class RefineryConfig(BaseModel):
    """Top-level configuration model."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    stage_defaults: Dict[StageName, StageConfig] = Field(default_factory=dict)
    presets: PresetsConfig = Field(default_factory=PresetsConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    def build_registry(self) -> PresetRegistry:
        return PresetRegistry(
            prompt_presets=self.presets.prompts, schema_presets=self.presets.schemas
        )


def load_config(path: Optional[str] = None) -> RefineryConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CARDREFINERY_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CARDREFINERY_CONFIG", "config.yaml")
    try:
        if os.path.exists(config_path):
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ConfigError(f"{config_path}: top level must be a mapping")
            config = RefineryConfig(**data)
        else:
            config = RefineryConfig()
    except yaml.YAMLError as e:
        raise ConfigError(f"{config_path}: invalid YAML: {e}") from e
    except PydanticValidationError as e:
        raise ConfigError(f"{config_path}: {e}") from e

    try:
        config.build_registry()
    except ValidationError as e:
        raise ConfigError(f"{config_path}: {e}") from e

    env_storage_url = os.getenv("CARDREFINERY_STORAGE_URL")
    if env_storage_url:
        config.storage.url = env_storage_url
    return config
