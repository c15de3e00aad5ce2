"""Fuzzy application of diff hunks to in-memory file content."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ..telemetry import emit_event
from .diff import DiffHunk, FileDiff, PatchError, parse_unified_diff, reverse_diff
from .workspace import ProjectFile

LOGGER = logging.getLogger(__name__)

__all__ = [
    "HunkCheck",
    "PatchSettings",
    "apply_diff_hunks",
    "apply_diff_to_content",
    "apply_diffs_to_files",
    "content_from_creation_diff",
    "revert_diffs",
    "validate_diff",
    "validate_diff_hunks_against_file",
]

_LITERAL_OPENING = re.compile(r"^[+ ]\s*const\s+\w+\s*=.*[\[{]\s*$")
_STATEMENT_ADDITION = re.compile(r"^\+\s*(console\.|if\s*\(|for\s*\(|while\s*\(|return\s)")
_LITERAL_ELEMENT = re.compile(r"^[+ ]\s*\[.*\]|^[+ ]\s*\{.*\}|^[+ ]\s*\d+|^[+ ]\s*['\"`]")
_VALIDATION_WINDOW = 10
_VALIDATION_DRIFT = 5


@dataclass(slots=True)
class PatchSettings:
    """Tunable thresholds for locating and verifying hunks."""

    context_match_ratio: float = 0.7
    min_context_for_search: int = 2
    search_sample_size: int = 5
    max_hunk_lines: int = 10

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "PatchSettings":
        section = (config or {}).get("patch") or {}
        defaults = cls()
        return cls(
            context_match_ratio=float(section.get("context_match_ratio", defaults.context_match_ratio)),
            min_context_for_search=int(section.get("min_context_for_search", defaults.min_context_for_search)),
            search_sample_size=int(section.get("search_sample_size", defaults.search_sample_size)),
            max_hunk_lines=int(section.get("max_hunk_lines", defaults.max_hunk_lines)),
        )


@dataclass(slots=True)
class HunkCheck:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Entry:
    kind: str
    text: str
    offset: int


def _split_hunk(hunk: DiffHunk) -> list[_Entry]:
    """Classify hunk lines and record each one's offset on the old side."""
    entries: list[_Entry] = []
    offset = 0
    for raw in hunk.lines:
        if raw.startswith("-"):
            entries.append(_Entry("remove", raw[1:], offset))
            offset += 1
        elif raw.startswith("+"):
            entries.append(_Entry("add", raw[1:], offset))
        else:
            text = raw[1:] if raw.startswith(" ") else raw
            entries.append(_Entry("context", text, offset))
            offset += 1
    return entries


def _locate(
    lines: Sequence[str],
    context: Sequence[_Entry],
    nominal: int,
    settings: PatchSettings,
) -> tuple[int, int, int]:
    """Search the whole file for the sampled context lines.

    Returns ``(index, score, sample_size)``; ``index`` is -1 when no position
    matched at least one line.
    """
    sample = list(context[: settings.search_sample_size])
    exact: list[int] = []
    best_index = -1
    best_score = 0
    for start in range(len(lines)):
        score = 0
        for entry in sample:
            position = start + entry.offset
            if position >= len(lines) or lines[position].strip() != entry.text.strip():
                break
            score += 1
        if score == len(sample):
            exact.append(start)
        elif score > best_score:
            best_index, best_score = start, score
    if exact:
        closest = min(exact, key=lambda candidate: abs(candidate - nominal))
        return closest, len(sample), len(sample)
    return best_index, best_score, len(sample)


def _context_ratio(lines: Sequence[str], entries: Sequence[_Entry], start: int) -> tuple[int, int]:
    matched = 0
    total = 0
    for entry in entries:
        if entry.kind != "context":
            continue
        total += 1
        position = start + entry.offset
        if 0 <= position < len(lines) and lines[position].strip() == entry.text.strip():
            matched += 1
    return matched, total


def _apply_one(result: list[str], hunk: DiffHunk, settings: PatchSettings) -> bool:
    entries = _split_hunk(hunk)
    nominal = hunk.old_start - 1
    start = nominal
    context = [entry for entry in entries if entry.kind == "context"]

    if len(context) >= settings.min_context_for_search:
        index, score, sample_size = _locate(result, context, nominal, settings)
        if index >= 0 and score >= math.ceil(sample_size / 2):
            start = index
            if start != nominal:
                LOGGER.info(
                    "Relocated hunk from line %d to line %d (%d/%d context lines)",
                    hunk.old_start,
                    start + 1,
                    score,
                    sample_size,
                )
                emit_event(
                    "patch.hunk_relocated",
                    declared=hunk.old_start,
                    actual=start + 1,
                    matched=score,
                    sampled=sample_size,
                )
        else:
            LOGGER.warning(
                "No good match for hunk at line %d (best %d/%d); keeping declared position",
                hunk.old_start,
                score,
                sample_size,
            )
            emit_event("patch.hunk_unmatched", declared=hunk.old_start, matched=score, sampled=sample_size)

    start = max(0, min(start, len(result)))

    matched, total = _context_ratio(result, entries, start)
    if total and matched / total < settings.context_match_ratio:
        LOGGER.warning(
            "Skipping hunk at line %d: context matched %d/%d", hunk.old_start, matched, total
        )
        emit_event("patch.hunk_skipped", declared=hunk.old_start, matched=matched, total=total)
        return False

    groups: list[tuple[int, list[str], list[str]]] = []
    for entry in entries:
        if entry.kind == "context":
            continue
        position = start + entry.offset
        if not groups or groups[-1][0] != position:
            groups.append((position, [], []))
        if entry.kind == "remove":
            groups[-1][1].append(entry.text)
        else:
            groups[-1][2].append(entry.text)

    for position, removes, adds in reversed(groups):
        if removes:
            del result[position : position + len(removes)]
        if adds:
            result[position:position] = adds
    return True


def apply_diff_hunks(
    content: str,
    hunks: Sequence[DiffHunk],
    *,
    settings: PatchSettings | None = None,
) -> str:
    """Apply ``hunks`` to ``content`` tolerating wrong line numbers.

    Hunks run bottom-up by declared start. A hunk that cannot be anchored or
    whose context no longer matches is skipped; the others still apply.
    """
    settings = settings or PatchSettings()
    result = content.split("\n")
    for hunk in sorted(hunks, key=lambda item: item.old_start, reverse=True):
        changes = sum(1 for line in hunk.lines if line[:1] in {"+", "-"})
        if changes > settings.max_hunk_lines:
            LOGGER.info(
                "Hunk at line %d changes %d lines (limit %d); it may match poorly",
                hunk.old_start,
                changes,
                settings.max_hunk_lines,
            )
        try:
            _apply_one(result, hunk, settings)
        except (IndexError, TypeError, ValueError) as error:
            LOGGER.warning("Failed to apply hunk at line %s: %s", getattr(hunk, "old_start", "?"), error)
            emit_event("patch.hunk_failed", declared=getattr(hunk, "old_start", None), error=str(error))
    return "\n".join(result)


def apply_diff_to_content(
    content: str,
    unified_diff: str,
    *,
    settings: PatchSettings | None = None,
) -> str:
    return apply_diff_hunks(content, parse_unified_diff(unified_diff), settings=settings)


def content_from_creation_diff(diff: FileDiff) -> str:
    """Treat every ``+`` line of a diff for a missing file as its content."""
    if diff.unified_diff:
        source = diff.unified_diff.replace("\r\n", "\n").split("\n")
    else:
        source = [line for hunk in diff.hunks for line in hunk.lines]
    return "\n".join(
        line[1:] for line in source if line.startswith("+") and not line.startswith("+++")
    )


def apply_diffs_to_files(
    files: Sequence[ProjectFile],
    diffs: Iterable[FileDiff],
    *,
    settings: PatchSettings | None = None,
) -> list[ProjectFile]:
    """Apply per-file diffs and return only the files that changed or were created."""
    originals = {item.filename: item.content for item in files}
    current = dict(originals)
    changed: dict[str, ProjectFile] = {}

    for diff in diffs:
        name = diff.filename
        if name in current:
            try:
                hunks = diff.hunks or parse_unified_diff(diff.unified_diff)
                updated = apply_diff_hunks(current[name], hunks, settings=settings)
            except (PatchError, IndexError, TypeError, ValueError, AttributeError) as error:
                LOGGER.error("Failed to apply diff to %s: %s", name, error)
                continue
            current[name] = updated
            if updated != originals[name]:
                changed[name] = ProjectFile(filename=name, content=updated)
            else:
                changed.pop(name, None)
                LOGGER.info("No changes detected for %s", name)
            continue

        content = content_from_creation_diff(diff)
        current[name] = content
        changed[name] = ProjectFile(filename=name, content=content)
        LOGGER.info("Created %s from diff (%d lines)", name, content.count("\n") + 1)
        emit_event("patch.file_created", filename=name, characters=len(content))

    return list(changed.values())


def revert_diffs(
    files: Sequence[ProjectFile],
    diffs: Iterable[FileDiff],
    *,
    settings: PatchSettings | None = None,
) -> list[ProjectFile]:
    """Undo previously applied diffs; returns the files whose content changed."""
    return apply_diffs_to_files(files, [reverse_diff(diff) for diff in diffs], settings=settings)


def validate_diff(diff: FileDiff) -> bool:
    """Structural validation plus a check for statements spliced into literals."""
    hunks = diff.hunks
    if not isinstance(hunks, list):
        return False
    for hunk in hunks:
        numbers_ok = (
            isinstance(hunk.old_start, int)
            and hunk.old_start > 0
            and isinstance(hunk.new_start, int)
            and hunk.new_start > 0
            and isinstance(hunk.old_lines, int)
            and hunk.old_lines >= 0
            and isinstance(hunk.new_lines, int)
            and hunk.new_lines >= 0
        )
        if not numbers_ok or not isinstance(hunk.lines, list):
            return False

    for hunk in hunks:
        lines = hunk.lines
        for index, line in enumerate(lines):
            following = lines[index + 1] if index + 1 < len(lines) else None
            if following is None:
                continue
            if _LITERAL_OPENING.match(line) and _STATEMENT_ADDITION.match(following):
                LOGGER.error(
                    "Diff for %s inserts a statement inside a literal: %r then %r",
                    diff.filename,
                    line,
                    following,
                )
                return False
            if _STATEMENT_ADDITION.match(line) and _LITERAL_ELEMENT.match(following):
                LOGGER.warning(
                    "Diff for %s may place a statement among literal elements: %r then %r",
                    diff.filename,
                    line,
                    following,
                )
    return True


def validate_diff_hunks_against_file(path: str, content: str, hunks: Sequence[DiffHunk]) -> HunkCheck:
    """Pre-flight check of declared hunk positions against real content."""
    errors: list[str] = []
    lines = content.split("\n")
    for hunk in hunks:
        if hunk.old_start < 1 or hunk.old_start > len(lines):
            errors.append(f"Hunk starts at invalid line {hunk.old_start} (file has {len(lines)} lines)")
            continue
        context = [entry.text for entry in _split_hunk(hunk) if entry.kind == "context"]
        if not context:
            errors.append(f"Hunk at line {hunk.old_start} has no context lines for validation")
            continue
        first = context[0].strip()
        window = range(max(0, hunk.old_start - _VALIDATION_WINDOW), min(len(lines), hunk.old_start + _VALIDATION_WINDOW))
        found = next((index + 1 for index in window if lines[index] and lines[index].strip() == first), -1)
        if found == -1:
            errors.append(f'Context line "{context[0]}" not found near line {hunk.old_start} in {path}')
        elif abs(found - hunk.old_start) > _VALIDATION_DRIFT:
            errors.append(
                f'Context line "{context[0]}" found at line {found}, but hunk expects line '
                f"{hunk.old_start} (difference: {abs(found - hunk.old_start)})"
            )
        end = hunk.old_start + hunk.old_lines - 1
        if end > len(lines):
            errors.append(f"Hunk extends to line {end} but file only has {len(lines)} lines")
    return HunkCheck(is_valid=not errors, errors=errors)
