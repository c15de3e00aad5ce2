"""Shared stage enumerations, model tiers and execution ordering."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping


class StageType(str, Enum):
    """Enumeration of the model-backed generation stages."""

    STAGE_0_CONTEXT_GATHERER = "STAGE_0_CONTEXT_GATHERER"
    STAGE_1_INTENT_PARSER = "STAGE_1_INTENT_PARSER"
    STAGE_2_PATCH_PLANNER = "STAGE_2_PATCH_PLANNER"
    STAGE_3_CODE_GENERATOR = "STAGE_3_CODE_GENERATOR"
    STAGE_4_VALIDATOR = "STAGE_4_VALIDATOR"
    LEGACY_SINGLE_STAGE = "LEGACY_SINGLE_STAGE"


class ModelTier(str, Enum):
    FAST = "claude-3-5-haiku-20241022"
    BALANCED = "claude-sonnet-4-20250514"
    POWERFUL = "claude-sonnet-4-5-20250929"


@dataclass(frozen=True, slots=True)
class StageConfig:
    """Model selection and budget for one stage."""

    model: str
    fallback_model: str | None
    max_tokens: int
    temperature: float = 0.0


MAX_CODEGEN_TOKENS = 40000

STAGE_MODEL_CONFIG: dict[StageType, StageConfig] = {
    StageType.STAGE_0_CONTEXT_GATHERER: StageConfig(ModelTier.FAST.value, ModelTier.BALANCED.value, 2000),
    StageType.STAGE_1_INTENT_PARSER: StageConfig(ModelTier.FAST.value, ModelTier.BALANCED.value, 4000),
    StageType.STAGE_2_PATCH_PLANNER: StageConfig(ModelTier.BALANCED.value, ModelTier.POWERFUL.value, 16000),
    StageType.STAGE_3_CODE_GENERATOR: StageConfig(
        ModelTier.POWERFUL.value, ModelTier.BALANCED.value, MAX_CODEGEN_TOKENS, 0.1
    ),
    StageType.STAGE_4_VALIDATOR: StageConfig(ModelTier.BALANCED.value, ModelTier.POWERFUL.value, 10000),
    StageType.LEGACY_SINGLE_STAGE: StageConfig(ModelTier.POWERFUL.value, ModelTier.BALANCED.value, 20000),
}

STAGE_SEQUENCE = [
    StageType.STAGE_0_CONTEXT_GATHERER,
    StageType.STAGE_1_INTENT_PARSER,
    StageType.STAGE_2_PATCH_PLANNER,
    StageType.STAGE_3_CODE_GENERATOR,
    StageType.STAGE_4_VALIDATOR,
]


def stage_configs_from_config(config: Mapping[str, Any] | None) -> dict[StageType, StageConfig]:
    """Apply ``models.stages`` overrides from ``config.yaml`` to the defaults."""
    overrides = ((config or {}).get("models") or {}).get("stages") or {}
    resolved = dict(STAGE_MODEL_CONFIG)
    for key, values in overrides.items():
        if not isinstance(values, Mapping):
            continue
        try:
            stage = StageType(str(key).upper())
        except ValueError as error:
            valid = ", ".join(item.value for item in StageType)
            raise KeyError(f"Unknown stage '{key}'. Expected one of: {valid}") from error
        current = resolved[stage]
        resolved[stage] = replace(
            current,
            model=str(values.get("model", current.model)),
            fallback_model=values.get("fallback_model", current.fallback_model),
            max_tokens=int(values.get("max_tokens", current.max_tokens)),
            temperature=float(values.get("temperature", current.temperature)),
        )
    return resolved


__all__ = [
    "MAX_CODEGEN_TOKENS",
    "STAGE_MODEL_CONFIG",
    "STAGE_SEQUENCE",
    "ModelTier",
    "StageConfig",
    "StageType",
    "stage_configs_from_config",
]
