"""Unified diff generation plus hunk parsing with line-count correction."""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DiffHunk",
    "DiffStats",
    "FileDiff",
    "PatchError",
    "correct_hunk",
    "generate_diff",
    "get_diff_stats",
    "parse_unified_diff",
    "render_unified_diff",
    "reverse_diff",
]

_HUNK_HEADER = re.compile(
    r"@@ -(?P<old_start>\d+),?(?P<old_count>\d*) \+(?P<new_start>\d+),?(?P<new_count>\d*) @@"
)
_DEFAULT_CONTEXT = 3


class PatchError(RuntimeError):
    """Raised when a diff cannot be produced or a patch is unusable."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class DiffHunk:
    """Contiguous block of a diff anchored at a 1-based position."""

    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "oldStart": self.old_start,
            "oldLines": self.old_lines,
            "newStart": self.new_start,
            "newLines": self.new_lines,
            "lines": list(self.lines),
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DiffHunk":
        """Build a hunk from camelCase (model output) or snake_case keys."""

        def _pick(camel: str, snake: str) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, 0)

        raw_lines = data.get("lines") or []
        return cls(
            old_start=_pick("oldStart", "old_start"),
            old_lines=_pick("oldLines", "old_lines"),
            new_start=_pick("newStart", "new_start"),
            new_lines=_pick("newLines", "new_lines"),
            lines=[str(line) for line in raw_lines] if isinstance(raw_lines, list) else raw_lines,
        )


@dataclass(slots=True)
class FileDiff:
    """All changes to a single file."""

    filename: str
    hunks: list[DiffHunk] = field(default_factory=list)
    unified_diff: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "hunks": [hunk.to_dict() for hunk in self.hunks],
            "unifiedDiff": self.unified_diff,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "FileDiff":
        hunks = [DiffHunk.from_mapping(item) for item in data.get("hunks") or [] if isinstance(item, Mapping)]
        return cls(
            filename=str(data.get("filename") or ""),
            hunks=hunks,
            unified_diff=str(data.get("unifiedDiff") or data.get("unified_diff") or ""),
        )


@dataclass(slots=True)
class DiffStats:
    additions: int
    deletions: int
    hunks: int


def _format_range(start: int, count: int) -> str:
    if count == 1:
        return str(start)
    return f"{start},{count}"


def render_unified_diff(filename: str, hunks: Sequence[DiffHunk]) -> str:
    """Render hunks as a unified diff with ``a/`` and ``b/`` file headers."""
    if not hunks:
        return ""
    output = [f"--- a/{filename}", f"+++ b/{filename}"]
    for hunk in hunks:
        output.append(
            f"@@ -{_format_range(hunk.old_start, hunk.old_lines)} "
            f"+{_format_range(hunk.new_start, hunk.new_lines)} @@"
        )
        output.extend(hunk.lines)
    return "\n".join(output) + "\n"


def _hunk_from_group(
    group: Sequence[tuple[str, int, int, int, int]],
    old_lines: Sequence[str],
    new_lines: Sequence[str],
) -> DiffHunk:
    first, last = group[0], group[-1]
    old_begin, old_end = first[1], last[2]
    new_begin, new_end = first[3], last[4]
    lines: list[str] = []
    for tag, a_start, a_end, b_start, b_end in group:
        if tag == "equal":
            lines.extend(f" {line}" for line in old_lines[a_start:a_end])
            continue
        if tag in {"replace", "delete"}:
            lines.extend(f"-{line}" for line in old_lines[a_start:a_end])
        if tag in {"replace", "insert"}:
            lines.extend(f"+{line}" for line in new_lines[b_start:b_end])
    return DiffHunk(
        old_start=old_begin + 1,
        old_lines=old_end - old_begin,
        new_start=new_begin + 1,
        new_lines=new_end - new_begin,
        lines=lines,
    )


def generate_diff(
    original: str,
    updated: str,
    filename: str,
    *,
    context: int = _DEFAULT_CONTEXT,
) -> FileDiff:
    """Return the structured and textual diff turning ``original`` into ``updated``.

    Content is split on ``\\n`` so a trailing newline is an empty final line; the
    hunks therefore reproduce ``updated`` exactly when applied to ``original``.
    """
    try:
        old_lines = original.split("\n")
        new_lines = updated.split("\n")
        matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
        hunks = [
            _hunk_from_group(group, old_lines, new_lines)
            for group in matcher.get_grouped_opcodes(context)
        ]
    except (AttributeError, TypeError, ValueError) as error:
        raise PatchError(
            f"Failed to generate diff for {filename}: {error}",
            details={"filename": filename},
        ) from error
    return FileDiff(filename=filename, hunks=hunks, unified_diff=render_unified_diff(filename, hunks))


def _classify(line: str) -> str:
    if line.startswith("+"):
        return "add"
    if line.startswith("-"):
        return "remove"
    return "context"


def correct_hunk(hunk: DiffHunk) -> tuple[DiffHunk, bool]:
    """Recompute declared line counts from the hunk body.

    Models routinely declare ``0`` or stale counts; the body is authoritative.
    """
    counts = {"add": 0, "remove": 0, "context": 0}
    for line in hunk.lines:
        counts[_classify(line)] += 1
    expected_old = counts["context"] + counts["remove"]
    expected_new = counts["context"] + counts["add"]
    adjusted = False
    if hunk.old_lines == 0 or hunk.old_lines != expected_old:
        adjusted = adjusted or hunk.old_lines != expected_old
        hunk.old_lines = expected_old
    if hunk.new_lines == 0 or hunk.new_lines != expected_new:
        adjusted = adjusted or hunk.new_lines != expected_new
        hunk.new_lines = expected_new
    return hunk, adjusted


def _is_file_header(lines: Sequence[str], index: int) -> bool:
    line = lines[index]
    if line.startswith("diff --git "):
        return True
    if line.startswith("--- ") and index + 1 < len(lines):
        return lines[index + 1].startswith("+++ ")
    return False


def parse_unified_diff(unified_diff: str) -> list[DiffHunk]:
    """Parse unified diff text into corrected hunks.

    Malformed ``@@`` headers are skipped with a warning and their body lines are
    dropped; parsing resumes at the next header.
    """
    text = (unified_diff or "").replace("\r\n", "\n")
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    hunks: list[DiffHunk] = []
    current: DiffHunk | None = None
    skipping = False

    def _finish() -> None:
        if current is None:
            return
        corrected, adjusted = correct_hunk(current)
        if adjusted:
            LOGGER.debug(
                "Adjusted hunk counts at -%s: now -%s/+%s",
                corrected.old_start,
                corrected.old_lines,
                corrected.new_lines,
            )
        hunks.append(corrected)

    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("@@"):
            _finish()
            current = None
            match = _HUNK_HEADER.match(line)
            if match is None:
                LOGGER.warning("Skipping malformed hunk header: %s", line)
                skipping = True
            else:
                skipping = False
                current = DiffHunk(
                    old_start=int(match.group("old_start")),
                    old_lines=int(match.group("old_count") or 0),
                    new_start=int(match.group("new_start")),
                    new_lines=int(match.group("new_count") or 0),
                )
            index += 1
            continue

        if _is_file_header(lines, index):
            _finish()
            current = None
            skipping = False
            index += 2 if line.startswith("--- ") else 1
            continue

        if current is not None and not skipping and not line.startswith("\\"):
            current.lines.append(line)
        index += 1

    _finish()
    return hunks


def get_diff_stats(diff: FileDiff) -> DiffStats:
    additions = 0
    deletions = 0
    for hunk in diff.hunks:
        for line in hunk.lines:
            kind = _classify(line)
            if kind == "add":
                additions += 1
            elif kind == "remove":
                deletions += 1
    return DiffStats(additions=additions, deletions=deletions, hunks=len(diff.hunks))


def reverse_diff(diff: FileDiff) -> FileDiff:
    """Return the inverse diff (additions become removals and vice versa)."""
    reversed_hunks: list[DiffHunk] = []
    for hunk in diff.hunks:
        flipped: list[str] = []
        for line in hunk.lines:
            kind = _classify(line)
            if kind == "add":
                flipped.append(f"-{line[1:]}")
            elif kind == "remove":
                flipped.append(f"+{line[1:]}")
            else:
                flipped.append(line)
        reversed_hunks.append(
            DiffHunk(
                old_start=hunk.new_start,
                old_lines=hunk.new_lines,
                new_start=hunk.old_start,
                new_lines=hunk.old_lines,
                lines=flipped,
            )
        )
    return FileDiff(
        filename=diff.filename,
        hunks=reversed_hunks,
        unified_diff=render_unified_diff(diff.filename, reversed_hunks),
    )
