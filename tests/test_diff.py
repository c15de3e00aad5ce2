from __future__ import annotations

from appgen.tools.diff import (
    DiffHunk,
    FileDiff,
    correct_hunk,
    generate_diff,
    get_diff_stats,
    parse_unified_diff,
    render_unified_diff,
    reverse_diff,
)


def test_generate_diff_renders_headers_and_single_hunk() -> None:
    diff = generate_diff("one\ntwo\nthree\n", "one\n2\nthree\nfour\n", "src/app/page.tsx")

    assert diff.filename == "src/app/page.tsx"
    assert len(diff.hunks) == 1
    assert diff.unified_diff.startswith("--- a/src/app/page.tsx\n+++ b/src/app/page.tsx\n@@ ")
    hunk = diff.hunks[0]
    assert "-two" in hunk.lines
    assert "+2" in hunk.lines
    assert "+four" in hunk.lines
    assert hunk.old_start == 1
    assert hunk.new_start == 1


def test_generate_diff_without_changes_is_empty() -> None:
    diff = generate_diff("same\n", "same\n", "README.md")

    assert diff.hunks == []
    assert diff.unified_diff == ""


def test_parse_unified_diff_recomputes_declared_counts() -> None:
    text = "\n".join(
        [
            "--- a/src/lib.ts",
            "+++ b/src/lib.ts",
            "@@ -1,0 +1,0 @@",
            " const a = 1;",
            "-const b = 2;",
            "-const c = 3;",
            " const d = 4;",
            " const e = 5;",
        ]
    )

    hunks = parse_unified_diff(text)

    assert len(hunks) == 1
    assert hunks[0].old_lines == 5
    assert hunks[0].new_lines == 3


def test_parse_unified_diff_skips_malformed_header() -> None:
    text = "\n".join(
        [
            "@@ broken header @@",
            "+ignored",
            "@@ -3,1 +3,2 @@",
            " kept",
            "+added",
        ]
    )

    hunks = parse_unified_diff(text)

    assert len(hunks) == 1
    assert hunks[0].old_start == 3
    assert hunks[0].lines == [" kept", "+added"]


def test_parse_unified_diff_ignores_no_newline_marker() -> None:
    text = "@@ -1 +1 @@\n-old\n+new\n\\ No newline at end of file\n"

    hunks = parse_unified_diff(text)

    assert hunks[0].lines == ["-old", "+new"]
    assert hunks[0].old_lines == 1
    assert hunks[0].new_lines == 1


def test_reverse_diff_swaps_additions_and_ranges() -> None:
    hunk = DiffHunk(old_start=2, old_lines=1, new_start=2, new_lines=2, lines=[" b", "+x"])
    diff = FileDiff(filename="notes.txt", hunks=[hunk], unified_diff=render_unified_diff("notes.txt", [hunk]))

    reversed_diff = reverse_diff(diff)

    flipped = reversed_diff.hunks[0]
    assert flipped.lines == [" b", "-x"]
    assert (flipped.old_start, flipped.old_lines) == (2, 2)
    assert (flipped.new_start, flipped.new_lines) == (2, 1)
    assert "@@ -2,2 +2 @@" in reversed_diff.unified_diff


def test_correct_hunk_overwrites_stale_counts() -> None:
    stale = DiffHunk(5, 0, 5, 7, [" a", "-b", "+c", "+d", " e"])

    corrected, adjusted = correct_hunk(stale)

    assert adjusted is True
    assert (corrected.old_lines, corrected.new_lines) == (3, 4)

    again, adjusted_again = correct_hunk(corrected)
    assert adjusted_again is False
    assert again is corrected


def test_diff_stats_count_lines_and_hunks() -> None:
    diff = FileDiff(
        filename="a.ts",
        hunks=[
            DiffHunk(1, 2, 1, 2, [" keep", "-old", "+new"]),
            DiffHunk(10, 1, 10, 3, [" tail", "+one", "+two"]),
        ],
    )

    stats = get_diff_stats(diff)

    assert stats.additions == 3
    assert stats.deletions == 1
    assert stats.hunks == 2


def test_file_diff_from_mapping_accepts_camel_case() -> None:
    diff = FileDiff.from_mapping(
        {
            "filename": "src/a.ts",
            "hunks": [{"oldStart": 4, "oldLines": 1, "newStart": 4, "newLines": 2, "lines": [" x", "+y"]}],
            "unifiedDiff": "@@ -4 +4,2 @@\n x\n+y\n",
        }
    )

    assert diff.hunks[0].old_start == 4
    assert diff.hunks[0].lines == [" x", "+y"]
    assert diff.to_dict()["hunks"][0]["newLines"] == 2
