"""Stage 2: plan per-file patches for an intent."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Sequence

from ..prompts import render_patch_planner_prompt, render_user_request
from ..structured import Err, IntentSpec, PartialOk, PatchPlan, is_response_truncated, parse_model_output
from ..tools.workspace import ProjectFile
from . import StageType
from .base import StageError, StageRuntime, invoke_stage

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "Stage 2: Patch Planner"


def select_relevant_files(
    files: Sequence[ProjectFile],
    intent: IntentSpec,
    *,
    is_initial: bool,
) -> list[ProjectFile]:
    """Narrow follow-up context to the intent's target files (substring match either way)."""
    if is_initial or not intent.target_files:
        return list(files)
    return [
        item
        for item in files
        if any(target in item.filename or item.filename in target for target in intent.target_files)
    ]


def plan_patches(
    runtime: StageRuntime,
    prompt: str,
    intent: IntentSpec,
    files: Sequence[ProjectFile],
    *,
    is_initial: bool,
) -> PatchPlan:
    relevant = select_relevant_files(files, intent, is_initial=is_initial)
    if len(relevant) < len(files):
        LOGGER.info("Patch planner context narrowed from %d to %d file(s)", len(files), len(relevant))

    raw = invoke_stage(
        runtime,
        StageType.STAGE_2_PATCH_PLANNER,
        STAGE_NAME,
        render_patch_planner_prompt(
            intent,
            relevant,
            is_initial=is_initial,
            app_type=runtime.app_type,
            max_hunk_lines=runtime.max_hunk_lines,
        ),
        render_user_request(prompt),
        metadata={"intentSpec": intent.to_wire()},
    )
    if is_response_truncated(raw):
        LOGGER.warning("Patch planner response looks truncated; ends with %r", raw[-100:])

    parsed = parse_model_output(raw, PatchPlan)
    if isinstance(parsed, Err):
        raise StageError(STAGE_NAME, f"invalid patch plan: patches array is missing or not an array ({parsed.reason})")
    if isinstance(parsed, PartialOk):
        for warning in parsed.warnings:
            LOGGER.warning("Patch planner: %s", warning)

    plan = parsed.value
    counts = Counter(patch.operation for patch in plan.patches)
    LOGGER.info(
        "Patch plan: %d patch(es) (%d create, %d modify, %d delete)",
        len(plan.patches),
        counts["create"],
        counts["modify"],
        counts["delete"],
    )
    return plan


__all__ = ["STAGE_NAME", "plan_patches", "select_relevant_files"]
