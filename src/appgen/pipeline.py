"""Stage orchestration for initial builds and follow-up edits."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from .models.llm_client import LLMClientError
from .stages.base import StageRuntime
from .stages.codegen import generate_code_follow_up, generate_code_initial
from .stages.context import enrich_prompt, gather_context, run_context_tools
from .stages.intent import parse_intent
from .stages.plan import plan_patches
from .stages.validate import fix_errors
from .structured import ContextGatheringResult, IntentSpec
from .telemetry import emit_event
from .tools.build_check import BuildValidator, ValidationReport
from .tools.diff import FileDiff, PatchError, generate_diff
from .tools.patch import PatchSettings, validate_diff
from .tools.tool_exec import ToolExecutor
from .tools.workspace import ProjectFile, filter_files_by_web3_requirement, filter_protected_config_files

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DiffBasedOptions",
    "PipelineResult",
    "run_diff_based_pipeline",
    "run_enhanced_pipeline",
    "run_follow_up_pipeline",
    "run_initial_pipeline",
]


@dataclass(slots=True)
class PipelineResult:
    """Files produced by a pipeline run.

    ``files`` holds complete contents. For follow-up runs it lists only the
    files that changed or were created; when the intent needs no changes it is
    the unchanged input.
    """

    files: list[ProjectFile]
    intent: IntentSpec
    diffs: list[FileDiff] = field(default_factory=list)
    validation: ValidationReport | None = None
    context: ContextGatheringResult | None = None


@dataclass(frozen=True, slots=True)
class DiffBasedOptions:
    enable_context_gathering: bool = True
    enable_diff_validation: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "DiffBasedOptions":
        section = (config or {}).get("pipeline") or {}
        return cls(
            enable_context_gathering=bool(section.get("enable_context_gathering", True)),
            enable_diff_validation=bool(section.get("enable_diff_validation", True)),
        )


def _validate_and_fix(
    runtime: StageRuntime,
    generated: list[ProjectFile],
    current: Sequence[ProjectFile],
    validator: BuildValidator | None,
    *,
    is_initial: bool,
    settings: PatchSettings | None,
) -> tuple[list[ProjectFile], ValidationReport | None]:
    if validator is None or not generated:
        return generated, None
    report = validator.validate(generated, current)
    if report.success:
        LOGGER.info("Build validation passed for %d file(s)", len(generated))
        return report.files, report
    LOGGER.warning("Build validation found %d error(s); running the error fixer", len(report.errors))
    return fix_errors(runtime, report, is_initial=is_initial, settings=settings), report


def run_initial_pipeline(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
    *,
    validator: BuildValidator | None = None,
    settings: PatchSettings | None = None,
) -> PipelineResult:
    """Intent, plan, complete-file generation and validation for a fresh project."""
    started = time.monotonic()
    intent = parse_intent(runtime, prompt)
    if not intent.needs_changes:
        LOGGER.info("No changes needed: %s", intent.reason or "intent reported none")
        return PipelineResult(files=list(files), intent=intent)

    visible = filter_files_by_web3_requirement(files, intent.is_web3)
    plan = plan_patches(runtime, prompt, intent, visible, is_initial=True)
    generated = generate_code_initial(runtime, prompt, plan, intent, visible)
    validated, report = _validate_and_fix(
        runtime, generated, files, validator, is_initial=True, settings=settings
    )
    final = filter_protected_config_files(validated)
    emit_event(
        "pipeline.completed",
        kind="initial",
        files=len(final),
        elapsed=round(time.monotonic() - started, 3),
    )
    return PipelineResult(files=final, intent=intent, validation=report)


def run_follow_up_pipeline(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
    *,
    validator: BuildValidator | None = None,
    settings: PatchSettings | None = None,
) -> PipelineResult:
    """Intent, diff plan, diff generation and validation for an existing project."""
    started = time.monotonic()
    intent = parse_intent(runtime, prompt)
    if not intent.needs_changes:
        LOGGER.info("No changes needed: %s", intent.reason or "intent reported none")
        return PipelineResult(files=list(files), intent=intent)

    visible = filter_files_by_web3_requirement(files, intent.is_web3)
    plan = plan_patches(runtime, prompt, intent, visible, is_initial=False)
    generation = generate_code_follow_up(runtime, prompt, plan, intent, visible, settings=settings)
    validated, report = _validate_and_fix(
        runtime, generation.files, files, validator, is_initial=False, settings=settings
    )
    final = filter_protected_config_files(validated)
    emit_event(
        "pipeline.completed",
        kind="follow_up",
        files=len(final),
        diffs=len(generation.diffs),
        elapsed=round(time.monotonic() - started, 3),
    )
    return PipelineResult(files=final, intent=intent, diffs=generation.diffs, validation=report)


def _gather(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
    project_dir: Path | None,
    executor: ToolExecutor | None,
) -> tuple[str, ContextGatheringResult | None]:
    """Stage 0 plus tool execution; any failure leaves the prompt untouched."""
    try:
        context = gather_context(runtime, prompt, files)
        if project_dir is None:
            if context.needs_context:
                LOGGER.warning("No project directory available; skipping %d tool call(s)", len(context.tool_calls))
            return prompt, context
        outputs = run_context_tools(context, project_dir, executor=executor)
        return enrich_prompt(prompt, outputs), context
    except (LLMClientError, OSError, ValueError) as error:
        LOGGER.warning("Context gathering failed, continuing without context: %s", error)
        return prompt, None


def run_diff_based_pipeline(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
    *,
    options: DiffBasedOptions | None = None,
    project_dir: Path | None = None,
    executor: ToolExecutor | None = None,
    validator: BuildValidator | None = None,
    settings: PatchSettings | None = None,
) -> PipelineResult:
    options = options or DiffBasedOptions()
    context = None
    if options.enable_context_gathering:
        prompt, context = _gather(runtime, prompt, files, project_dir, executor)

    result = run_follow_up_pipeline(runtime, prompt, files, validator=validator, settings=settings)
    result.context = context

    if options.enable_diff_validation:
        for diff in result.diffs:
            if not validate_diff(diff):
                LOGGER.warning("Diff for %s failed validation; keeping the applied result", diff.filename)
    return result


def run_enhanced_pipeline(
    runtime: StageRuntime,
    prompt: str,
    files: Sequence[ProjectFile],
    *,
    is_initial: bool,
    enable_context_gathering: bool = True,
    project_dir: Path | None = None,
    executor: ToolExecutor | None = None,
    validator: BuildValidator | None = None,
    settings: PatchSettings | None = None,
) -> PipelineResult:
    """Context gathering, a full pipeline run, then a diff per modified file.

    Diffs that fail validation or cannot be generated are omitted; the file's
    full content is still returned.
    """
    context = None
    if enable_context_gathering:
        prompt, context = _gather(runtime, prompt, files, project_dir, executor)

    runner = run_initial_pipeline if is_initial else run_follow_up_pipeline
    result = runner(runtime, prompt, files, validator=validator, settings=settings)
    result.context = context

    originals = {item.filename: item.content for item in files}
    diffs: list[FileDiff] = []
    for item in result.files:
        original = originals.get(item.filename)
        if original is None or original == item.content:
            continue
        try:
            diff = generate_diff(original, item.content, item.filename)
        except PatchError as error:
            LOGGER.error("Failed to generate diff for %s: %s", item.filename, error)
            continue
        if validate_diff(diff):
            diffs.append(diff)
        else:
            LOGGER.warning("Generated diff for %s is invalid; using full content", item.filename)
    result.diffs = diffs
    return result
