from __future__ import annotations

import logging

from appgen.tools.diff import DiffHunk, FileDiff, generate_diff
from appgen.tools.patch import (
    PatchSettings,
    apply_diff_hunks,
    apply_diff_to_content,
    apply_diffs_to_files,
    content_from_creation_diff,
    revert_diffs,
    validate_diff,
    validate_diff_hunks_against_file,
)
from appgen.tools.workspace import ProjectFile


def test_apply_hunk_at_declared_position() -> None:
    hunk = DiffHunk(old_start=2, old_lines=1, new_start=2, new_lines=2, lines=[" b", "+x"])

    assert apply_diff_hunks("a\nb\nc\nd\n", [hunk]) == "a\nb\nx\nc\nd\n"


def test_apply_hunk_relocates_when_line_numbers_are_wrong() -> None:
    hunk = DiffHunk(old_start=5, old_lines=2, new_start=5, new_lines=3, lines=[" b", " c", "+y"])

    assert apply_diff_hunks("a\nb\nc\nd\n", [hunk]) == "a\nb\nc\ny\nd\n"


def test_hunk_below_context_threshold_is_skipped_but_others_apply() -> None:
    stale = DiffHunk(old_start=1, old_lines=3, new_start=1, new_lines=4, lines=[" a", " x", " y", "+z"])
    good = DiffHunk(old_start=4, old_lines=1, new_start=4, new_lines=2, lines=[" d", "+e"])

    result = apply_diff_hunks("a\nb\nc\nd", [stale, good])

    assert result == "a\nb\nc\nd\ne"


def test_generated_diff_applies_back_to_original() -> None:
    original = "one\ntwo\nthree\n"
    updated = "one\n2\nthree\nfour\n"
    diff = generate_diff(original, updated, "notes.txt")

    assert apply_diff_hunks(original, diff.hunks) == updated
    assert apply_diff_to_content(original, diff.unified_diff) == updated


def test_apply_diffs_to_files_returns_changed_and_created_only() -> None:
    files = [
        ProjectFile("src/app/page.tsx", "line one\nline two\n"),
        ProjectFile("README.md", "docs\n"),
    ]
    page_diff = generate_diff("line one\nline two\n", "line one\nline 2\n", "src/app/page.tsx")
    creation = FileDiff(
        filename="src/lib/util.ts",
        hunks=[DiffHunk(1, 0, 1, 2, ["+export const x = 1;", "+export const y = 2;"])],
    )

    changed = apply_diffs_to_files(files, [page_diff, creation])

    by_name = {item.filename: item.content for item in changed}
    assert set(by_name) == {"src/app/page.tsx", "src/lib/util.ts"}
    assert by_name["src/app/page.tsx"] == "line one\nline 2\n"
    assert by_name["src/lib/util.ts"] == "export const x = 1;\nexport const y = 2;"


def test_content_from_creation_diff_ignores_file_headers() -> None:
    diff = FileDiff(
        filename="new.ts",
        unified_diff="--- /dev/null\n+++ b/new.ts\n@@ -0,0 +1,2 @@\n+first\n+second",
    )

    assert content_from_creation_diff(diff) == "first\nsecond"


def test_revert_diffs_restores_previous_content() -> None:
    original = "alpha\nbeta\ngamma\n"
    updated = "alpha\nBETA\ngamma\ndelta\n"
    diff = generate_diff(original, updated, "notes.txt")

    reverted = revert_diffs([ProjectFile("notes.txt", updated)], [diff])

    assert reverted == [ProjectFile("notes.txt", original)]


def test_validate_diff_rejects_statement_inside_literal() -> None:
    spliced = FileDiff(
        filename="src/data.ts",
        hunks=[DiffHunk(1, 1, 1, 2, [" const items = [", "+console.log('oops');"])],
    )
    clean = FileDiff(filename="src/data.ts", hunks=[DiffHunk(1, 1, 1, 2, [" const a = 1;", "+const b = 2;"])])
    broken_numbers = FileDiff(filename="src/data.ts", hunks=[DiffHunk(0, 1, 1, 1, [" x"])])

    assert validate_diff(spliced) is False
    assert validate_diff(clean) is True
    assert validate_diff(broken_numbers) is False


def test_validate_hunks_against_file_reports_bad_positions() -> None:
    content = "a\nb\nc\nd"
    out_of_range = DiffHunk(40, 1, 40, 1, [" a"])
    no_context = DiffHunk(1, 1, 1, 1, ["-a", "+A"])
    good = DiffHunk(2, 2, 2, 3, [" b", " c", "+x"])

    check = validate_diff_hunks_against_file("notes.txt", content, [out_of_range, no_context])
    assert check.is_valid is False
    assert any("invalid line 40" in error for error in check.errors)
    assert any("no context lines" in error for error in check.errors)

    assert validate_diff_hunks_against_file("notes.txt", content, [good]).is_valid is True


def test_patch_settings_read_from_config() -> None:
    settings = PatchSettings.from_config({"patch": {"context_match_ratio": 0.5, "max_hunk_lines": 20}})

    assert settings.context_match_ratio == 0.5
    assert settings.max_hunk_lines == 20
    assert settings.min_context_for_search == 2


def test_oversized_hunk_is_reported_and_still_applied(caplog) -> None:
    added = [f"+line {number}" for number in range(4)]
    hunk = DiffHunk(old_start=1, old_lines=1, new_start=1, new_lines=5, lines=[" a", *added])
    settings = PatchSettings(max_hunk_lines=3)

    with caplog.at_level(logging.INFO, logger="appgen.tools.patch"):
        result = apply_diff_hunks("a\nb", [hunk], settings=settings)

    assert result == "a\nline 0\nline 1\nline 2\nline 3\nb"
    assert any("changes 4 lines (limit 3)" in record.getMessage() for record in caplog.records)
