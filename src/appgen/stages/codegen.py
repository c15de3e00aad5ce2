"""Stage 3: generate file contents (initial builds) or diffs (follow-up edits)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from ..prompts import (
    TEMPLATE_ONLY_SUFFIX,
    render_code_generator_prompt,
    render_template_only_retry,
    render_user_request,
)
from ..structured import Err, GeneratedFile, IntentSpec, PartialOk, PatchPlan, is_response_truncated, parse_model_output
from ..tools.diff import FileDiff, PatchError, generate_diff, parse_unified_diff
from ..tools.patch import PatchSettings, apply_diffs_to_files
from ..tools.workspace import ProjectFile, validate_no_new_contracts
from . import StageType
from .base import StageError, StageRuntime, invoke_stage

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "Stage 3: Code Generator"
RETRY_STAGE_NAME = "Stage 3: Code Generator (Retry)"
TEMPLATE_RETRY_STAGE_NAME = "Stage 3: Code Generator (Retry - Template Only)"


@dataclass(slots=True)
class FollowUpGeneration:
    """Changed files plus the diffs that produced them."""

    files: list[ProjectFile]
    diffs: list[FileDiff] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _generate(
    runtime: StageRuntime,
    system_prompt: str,
    user_prompt: str,
    *,
    stage_name: str = STAGE_NAME,
    metadata: dict | None = None,
) -> list[GeneratedFile]:
    """Call the generator; a truncated reply is retried once with a larger budget."""
    raw = invoke_stage(
        runtime,
        StageType.STAGE_3_CODE_GENERATOR,
        stage_name,
        system_prompt,
        user_prompt,
        metadata=metadata,
    )
    parsed = parse_model_output(raw, list[GeneratedFile])
    if isinstance(parsed, Err) and is_response_truncated(raw) and "(Retry" not in stage_name:
        LOGGER.warning("Code generator response truncated at %d chars; retrying with a larger budget", len(raw))
        raw = invoke_stage(
            runtime,
            StageType.STAGE_3_CODE_GENERATOR,
            RETRY_STAGE_NAME,
            system_prompt,
            user_prompt,
            metadata=metadata,
        )
        parsed = parse_model_output(raw, list[GeneratedFile])
    if isinstance(parsed, Err):
        raise StageError(STAGE_NAME, f"response is not a list of files ({parsed.reason})")
    if isinstance(parsed, PartialOk):
        for warning in parsed.warnings:
            LOGGER.warning("Code generator: %s", warning)
    return parsed.value


def _as_complete(entries: Sequence[GeneratedFile], *, skip: Sequence[str] = ()) -> list[ProjectFile]:
    return [
        ProjectFile(filename=entry.filename, content=entry.content or "")
        for entry in entries
        if entry.filename not in skip
    ]


def generate_code_initial(
    runtime: StageRuntime,
    prompt: str,
    plan: PatchPlan,
    intent: IntentSpec,
    files: Sequence[ProjectFile],
) -> list[ProjectFile]:
    """Complete file contents for a fresh project.

    Web3 intents may only edit the bundled contract templates: a reply that
    creates any other ``.sol`` file gets one template-only retry, after which
    remaining offenders are dropped.
    """
    system_prompt = render_code_generator_prompt(plan, intent, files, is_initial=True, app_type=runtime.app_type)
    metadata = {"patchPlan": plan.to_wire(), "intentSpec": intent.to_wire()}
    entries = _generate(runtime, system_prompt, render_user_request(prompt), metadata=metadata)

    if intent.is_web3:
        check = validate_no_new_contracts(entries)
        if not check.is_valid:
            LOGGER.warning("Retrying code generation in template-only mode: %s", check.invalid_files)
            entries = _generate(
                runtime,
                system_prompt + TEMPLATE_ONLY_SUFFIX,
                render_template_only_retry(prompt, check.invalid_files),
                stage_name=TEMPLATE_RETRY_STAGE_NAME,
                metadata=metadata,
            )
            retry_check = validate_no_new_contracts(entries)
            if not retry_check.is_valid:
                LOGGER.error("Template-only retry still created contracts; dropping %s", retry_check.invalid_files)
                return _as_complete(entries, skip=retry_check.invalid_files)

    generated = _as_complete(entries)
    LOGGER.info("Code generator produced %d complete file(s)", len(generated))
    return generated


def check_follow_up_entries(
    entries: Sequence[GeneratedFile],
    existing: set[str],
) -> tuple[list[str], list[str]]:
    """Existing files must arrive as ``modify`` diffs, new files as ``create`` contents."""
    errors: list[str] = []
    warnings: list[str] = []
    for entry in entries:
        operation = entry.operation or "unknown"
        if entry.filename in existing:
            if operation != "modify":
                errors.append(f"{entry.filename}: existing file has operation '{operation}' (should be 'modify')")
            if not entry.unified_diff:
                errors.append(f"{entry.filename}: existing file is missing unifiedDiff")
            if entry.content:
                warnings.append(f"{entry.filename}: existing file has content (should use unifiedDiff only)")
        else:
            if operation != "create":
                errors.append(f"{entry.filename}: new file has operation '{operation}' (should be 'create')")
            if not entry.content:
                errors.append(f"{entry.filename}: new file is missing content")
            if entry.unified_diff:
                warnings.append(f"{entry.filename}: new file has unifiedDiff (should use content only)")
    return errors, warnings


def _convert_full_content(
    entries: list[GeneratedFile],
    originals: dict[str, str],
) -> list[GeneratedFile]:
    """Turn full-content replies for existing files into diffs against the original."""
    converted: list[GeneratedFile] = []
    for entry in entries:
        if entry.filename in originals and entry.content and not entry.unified_diff:
            try:
                diff = generate_diff(originals[entry.filename], entry.content, entry.filename)
            except PatchError as error:
                LOGGER.error("Could not convert %s to a diff: %s", entry.filename, error)
                converted.append(entry)
                continue
            LOGGER.info("Converted full content of %s into a %d-hunk diff", entry.filename, len(diff.hunks))
            entry = entry.model_copy(update={"operation": "modify", "unified_diff": diff.unified_diff, "content": None})
        converted.append(entry)
    return converted


def generate_code_follow_up(
    runtime: StageRuntime,
    prompt: str,
    plan: PatchPlan,
    intent: IntentSpec,
    files: Sequence[ProjectFile],
    *,
    settings: PatchSettings | None = None,
) -> FollowUpGeneration:
    system_prompt = render_code_generator_prompt(plan, intent, files, is_initial=False, app_type=runtime.app_type)
    metadata = {"patchPlan": plan.to_wire(), "intentSpec": intent.to_wire()}
    entries = _generate(runtime, system_prompt, render_user_request(prompt), metadata=metadata)

    originals = {item.filename: item.content for item in files}
    errors, warnings = check_follow_up_entries(entries, set(originals))
    for message in errors:
        LOGGER.warning("Code generator format error: %s", message)
    for message in warnings:
        LOGGER.info("Code generator format warning: %s", message)
    if errors:
        entries = _convert_full_content(entries, originals)

    diffs: list[FileDiff] = []
    for entry in entries:
        if entry.operation != "modify" or not entry.unified_diff:
            continue
        hunks = parse_unified_diff(entry.unified_diff)
        if hunks:
            diffs.append(FileDiff(filename=entry.filename, hunks=hunks, unified_diff=entry.unified_diff))
        else:
            LOGGER.warning("Diff for %s contains no hunks; ignoring it", entry.filename)
    if not diffs and originals:
        LOGGER.warning("Code generator produced no diffs for an existing project")

    changed = apply_diffs_to_files(files, diffs, settings=settings) if diffs else []
    changed.extend(
        ProjectFile(filename=entry.filename, content=entry.content)
        for entry in entries
        if entry.operation == "create" and entry.content
    )
    LOGGER.info("Code generator follow-up: %d changed file(s), %d diff(s)", len(changed), len(diffs))
    return FollowUpGeneration(files=changed, diffs=diffs, errors=errors, warnings=warnings)


__all__ = [
    "FollowUpGeneration",
    "RETRY_STAGE_NAME",
    "STAGE_NAME",
    "TEMPLATE_RETRY_STAGE_NAME",
    "check_follow_up_entries",
    "generate_code_follow_up",
    "generate_code_initial",
]
