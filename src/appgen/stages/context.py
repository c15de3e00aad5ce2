"""Stage 0: decide whether read-only project inspection should precede editing."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from ..prompts import describe_tool_results, render_context_gatherer_prompt
from ..structured import ContextGatheringResult, Err, PartialOk, parse_model_output
from ..tools.tool_exec import ToolExecutor, ToolResult
from ..tools.workspace import ProjectFile
from . import StageType
from .base import StageRuntime, invoke_stage

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "Stage 0: Context Gatherer"


def gather_context(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
) -> ContextGatheringResult:
    """Ask the model which read-only tools it wants to run; malformed output means no context."""
    system_prompt = render_context_gatherer_prompt(prompt, files)
    raw = invoke_stage(
        runtime,
        StageType.STAGE_0_CONTEXT_GATHERER,
        STAGE_NAME,
        system_prompt,
        prompt,
    )
    parsed = parse_model_output(raw, ContextGatheringResult)
    if isinstance(parsed, Err):
        LOGGER.warning("Context gatherer returned unusable output (%s); continuing without context", parsed.reason)
        return ContextGatheringResult(needs_context=False)
    if isinstance(parsed, PartialOk):
        for warning in parsed.warnings:
            LOGGER.warning("Context gatherer: %s", warning)
    result = parsed.value
    LOGGER.info(
        "Context gatherer: needs_context=%s, %d tool call(s)",
        result.needs_context,
        len(result.tool_calls),
    )
    return result


def run_context_tools(
    result: ContextGatheringResult,
    project_root: Path,
    *,
    executor: ToolExecutor | None = None,
) -> list[ToolResult]:
    if not result.needs_context or not result.tool_calls:
        return []
    runner = executor or ToolExecutor(project_root)
    return runner.execute(result.tool_calls)


def enrich_prompt(prompt: str, outputs: Sequence[ToolResult]) -> str:
    """Append the tool outputs to the user prompt for the later stages."""
    if not outputs:
        return prompt
    return prompt + describe_tool_results([item.describe() for item in outputs])


__all__ = ["STAGE_NAME", "enrich_prompt", "gather_context", "run_context_tools"]
