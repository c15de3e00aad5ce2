"""Stage 4: repair files named by compiler or deployment errors."""

from __future__ import annotations

import logging
import posixpath
import re
from collections import defaultdict
from typing import Sequence

from ..prompts import render_deployment_fix_user_prompt, render_error_fix_prompt
from ..structured import Err, GeneratedFile, PartialOk, parse_model_output
from ..tools.build_check import ValidationReport
from ..tools.deploy_errors import (
    DeploymentError,
    format_errors_for_llm,
    get_files_to_fix,
    parse_deployment_errors,
)
from ..tools.diff import PatchError
from ..tools.patch import PatchSettings, apply_diff_to_content, apply_diffs_to_files
from ..tools.workspace import ProjectFile, merge_files
from . import StageType
from .base import StageRuntime, invoke_stage

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "Stage 4: Compilation Error Fixes"
DEPLOYMENT_STAGE_NAME = "Stage 4: Deployment Error Fixes"

_ABI_BLOCK = re.compile(r"export\s+const\s+\w+_ABI\s*=\s*\[([\s\S]*?)\]\s+as\s+const;")
_ABI_NAME = re.compile(r'"name":\s*"([^"]+)"')
_ABI_FUNCTION = re.compile(r'"type":\s*"function"')
_ABI_ENTRY_SPLIT = re.compile(r"\},\s*\{")


def group_errors_by_file(
    errors: Sequence[DeploymentError],
    files: Sequence[ProjectFile],
) -> dict[str, list[DeploymentError]]:
    """Map project filenames to their errors, exact paths first, then basenames."""
    by_file: dict[str, list[DeploymentError]] = defaultdict(list)
    for error in errors:
        if error.file:
            by_file[error.file].append(error)

    names = {item.filename for item in files}
    exact = {name: found for name, found in by_file.items() if name in names}
    if exact:
        return exact

    by_basename: dict[str, list[DeploymentError]] = defaultdict(list)
    for name, found in by_file.items():
        by_basename[posixpath.basename(name)].extend(found)
    matched = {
        item.filename: by_basename[posixpath.basename(item.filename)]
        for item in files
        if posixpath.basename(item.filename) in by_basename
    }
    if matched:
        LOGGER.info("Matched error files by basename: %s", sorted(matched))
    return matched


def describe_errors(errors_by_file: dict[str, list[DeploymentError]]) -> str:
    blocks = []
    for name, errors in errors_by_file.items():
        lines = []
        for error in errors:
            if error.line:
                location = f"Line {error.line}" + (f":{error.column}" if error.column else "")
            else:
                location = "Unknown location"
            lines.append(f"{location}: {error.message} ({error.category})")
        blocks.append(f"{name}:\n" + "\n".join(lines))
    return "\n\n".join(blocks)


def _parse_fixes(raw: str) -> list[GeneratedFile] | None:
    parsed = parse_model_output(raw, list[GeneratedFile])
    if isinstance(parsed, Err):
        LOGGER.error("Could not parse error fixes: %s", parsed.reason)
        return None
    if isinstance(parsed, PartialOk):
        for warning in parsed.warnings:
            LOGGER.warning("Error fixer: %s", warning)
    return parsed.value


def fix_errors(
    runtime: StageRuntime,
    report: ValidationReport,
    *,
    is_initial: bool,
    settings: PatchSettings | None = None,
) -> list[ProjectFile]:
    """Ask the validator model to fix ``report.errors`` and merge its answers.

    Files the model did not return keep their original content. A fix whose
    diff cannot be applied leaves the original file in place.
    """
    files = report.files
    errors_by_file = group_errors_by_file(report.errors, files)
    if not errors_by_file:
        LOGGER.warning("No files matched %d validation error(s); returning files unchanged", len(report.errors))
        return list(files)

    to_fix = [item for item in files if item.filename in errors_by_file]
    raw = invoke_stage(
        runtime,
        StageType.STAGE_4_VALIDATOR,
        STAGE_NAME,
        render_error_fix_prompt(to_fix, describe_errors(errors_by_file), is_initial=is_initial),
        "Fix the errors listed above.",
        metadata={
            "compilationErrors": [error.to_dict() for error in report.errors],
            "filesToFix": len(to_fix),
        },
    )
    fixes = _parse_fixes(raw)
    if fixes is None:
        return list(files)

    originals = {item.filename: item for item in files}
    updates: list[ProjectFile] = []
    for fix in fixes:
        original = originals.get(fix.filename)
        if fix.content:
            updates.append(ProjectFile(filename=fix.filename, content=fix.content))
        elif fix.unified_diff:
            if original is None:
                LOGGER.warning("Fix for unknown file %s ignored", fix.filename)
                continue
            try:
                updated = apply_diff_to_content(original.content, fix.unified_diff, settings=settings)
            except (PatchError, IndexError, TypeError, ValueError) as error:
                LOGGER.warning("Could not apply fix to %s: %s", fix.filename, error)
                continue
            updates.append(ProjectFile(filename=fix.filename, content=updated))
        else:
            LOGGER.warning("Fix for %s has neither content nor diff", fix.filename)

    for message in preserve_contract_abis(files, updates):
        LOGGER.warning(message)
    merged = merge_files(files, updates)
    LOGGER.info("Applied %d fix(es) across %d file(s) with errors", len(updates), len(errors_by_file))
    return merged


def _abi_body(content: str) -> str | None:
    match = _ABI_BLOCK.search(content)
    return match.group(1) if match else None


def _abi_function_names(body: str) -> list[str]:
    names = []
    for entry in _ABI_ENTRY_SPLIT.split(body):
        if _ABI_FUNCTION.search(entry):
            match = _ABI_NAME.search(entry)
            if match:
                names.append(match.group(1))
    return names


def preserve_contract_abis(originals: Sequence[ProjectFile], updates: list[ProjectFile]) -> list[str]:
    """Restore ``contractConfig.ts`` files whose fix dropped or renamed ABI functions."""
    before = {item.filename: item.content for item in originals}
    warnings: list[str] = []
    for index, item in enumerate(updates):
        if not item.filename.endswith("contractConfig.ts") or item.filename not in before:
            continue
        old_abi = _abi_body(before[item.filename])
        new_abi = _abi_body(item.content)
        if old_abi is None or new_abi is None:
            continue
        removed = len(_ABI_NAME.findall(old_abi)) - len(_ABI_NAME.findall(new_abi))
        missing = [name for name in _abi_function_names(old_abi) if name not in _abi_function_names(new_abi)]
        if removed > 0 or missing:
            detail = f"{removed} entries removed" if removed > 0 else f"functions renamed: {', '.join(missing)}"
            warnings.append(f"{item.filename}: ABI modified by fix ({detail}); restoring original")
            updates[index] = ProjectFile(filename=item.filename, content=before[item.filename])
    return warnings


def fix_deployment_errors(
    runtime: StageRuntime,
    error_output: str,
    logs: str,
    files: Sequence[ProjectFile],
    *,
    settings: PatchSettings | None = None,
) -> list[ProjectFile]:
    """Fix a failed deployment with diff patches; returns the full, updated file set."""
    parsed = parse_deployment_errors(error_output, logs)
    LOGGER.info(
        "Deployment errors: %d (typescript=%s eslint=%s build=%s)",
        len(parsed.errors),
        parsed.has_typescript_errors,
        parsed.has_eslint_errors,
        parsed.has_build_errors,
    )
    if not parsed.errors:
        LOGGER.warning("No parseable errors in deployment output; leaving files unchanged")
        return list(files)

    to_fix = get_files_to_fix(parsed, files)
    if not to_fix:
        LOGGER.warning("Deployment errors name no known files; leaving files unchanged")
        return list(files)

    raw = invoke_stage(
        runtime,
        StageType.STAGE_4_VALIDATOR,
        DEPLOYMENT_STAGE_NAME,
        render_error_fix_prompt(to_fix, format_errors_for_llm(parsed), is_initial=False),
        render_deployment_fix_user_prompt(parsed.summary),
        log_name="stage4-deployment-error-fixes",
        metadata={"errorCount": len(parsed.errors), "filesToFix": len(to_fix)},
    )
    fixes = _parse_fixes(raw)
    if fixes is None:
        return list(files)

    diffs = [fix.to_file_diff() for fix in fixes if fix.unified_diff or fix.diff_hunks]
    diffs = [diff for diff in diffs if diff.hunks]
    if diffs:
        changed = apply_diffs_to_files(files, diffs, settings=settings)
        LOGGER.info("Deployment fixes changed %d file(s)", len(changed))
        return merge_files(files, changed)

    known = {item.filename for item in files}
    full = [
        ProjectFile(filename=fix.filename, content=fix.content)
        for fix in fixes
        if fix.content and fix.filename in known
    ]
    if full:
        LOGGER.info("Deployment fixer returned full content for %d file(s)", len(full))
        return merge_files(files, full)
    LOGGER.warning("Deployment fixer returned no usable fixes")
    return list(files)


__all__ = [
    "DEPLOYMENT_STAGE_NAME",
    "STAGE_NAME",
    "describe_errors",
    "fix_deployment_errors",
    "fix_errors",
    "group_errors_by_file",
    "preserve_contract_abis",
]
