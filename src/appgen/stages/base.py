"""Shared helpers for invoking stages and recording their responses."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from ..router import CallLLM
from ..tools.stage_logs import StageLogger
from . import StageType

LOGGER = logging.getLogger(__name__)

STAGE_LOG_NAMES = {
    StageType.STAGE_0_CONTEXT_GATHERER: "stage0-context-gatherer",
    StageType.STAGE_1_INTENT_PARSER: "stage1-intent-parser",
    StageType.STAGE_2_PATCH_PLANNER: "stage2-patch-planner",
    StageType.STAGE_3_CODE_GENERATOR: "stage3-code-generator",
    StageType.STAGE_4_VALIDATOR: "stage4-compilation-fixes",
    StageType.LEGACY_SINGLE_STAGE: "legacy-single-stage",
}


class StageError(RuntimeError):
    """Raised when a stage cannot produce a usable result."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


@dataclass(slots=True)
class StageRuntime:
    """Collaborators every stage needs: the model seam and an optional stage log."""

    call_llm: CallLLM
    stage_logger: StageLogger | None = None
    app_type: str = "farcaster"
    max_hunk_lines: int = 10


def invoke_stage(
    runtime: StageRuntime,
    stage_type: StageType,
    stage_name: str,
    system_prompt: str,
    user_prompt: str,
    *,
    log_name: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> str:
    """Call the model for one stage and persist the raw response."""
    LOGGER.info("%s: system prompt %d chars, user prompt %d chars", stage_name, len(system_prompt), len(user_prompt))
    started = time.monotonic()
    response = runtime.call_llm(system_prompt, user_prompt, stage_name, stage_type)
    elapsed_ms = int((time.monotonic() - started) * 1000)
    LOGGER.info("%s: received %d chars in %d ms", stage_name, len(response), elapsed_ms)

    if runtime.stage_logger is not None:
        details: dict[str, Any] = {
            "stageName": stage_name,
            "systemPromptLength": len(system_prompt),
            "userPromptLength": len(user_prompt),
            "responseTime": elapsed_ms,
        }
        details.update(metadata or {})
        runtime.stage_logger.record(log_name or STAGE_LOG_NAMES[stage_type], response, details)
    return response


__all__ = ["STAGE_LOG_NAMES", "StageError", "StageRuntime", "invoke_stage"]
