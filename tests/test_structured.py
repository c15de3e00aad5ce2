from __future__ import annotations

import json

from appgen.structured import (
    END_MARKER,
    START_MARKER,
    Err,
    GeneratedFile,
    IntentSpec,
    Ok,
    PartialOk,
    PatchPlan,
    extract_json_block,
    is_response_truncated,
    parse_model_output,
)


def _wrap(payload: object) -> str:
    return f"Here you go.\n{START_MARKER}\n{json.dumps(payload)}\n{END_MARKER}\nDone."


def test_intent_parses_between_markers() -> None:
    raw = _wrap(
        {
            "feature": "Leaderboard",
            "requirements": ["show top 10"],
            "targetFiles": ["src/app/page.tsx"],
            "dependencies": [],
            "needsChanges": True,
            "isWeb3": False,
        }
    )

    result = parse_model_output(raw, IntentSpec)

    assert isinstance(result, Ok)
    assert result.value.feature == "Leaderboard"
    assert result.value.target_files == ["src/app/page.tsx"]
    assert result.value.needs_changes is True


def test_intent_with_string_needs_changes_is_rejected() -> None:
    raw = _wrap(
        {
            "feature": "Leaderboard",
            "requirements": [],
            "targetFiles": [],
            "dependencies": [],
            "needsChanges": "yes",
        }
    )

    result = parse_model_output(raw, IntentSpec)

    assert isinstance(result, Err)
    assert "IntentSpec" in result.reason


def test_patch_plan_drops_invalid_patch_entries() -> None:
    raw = _wrap(
        {
            "patches": [
                {
                    "filename": "src/app/page.tsx",
                    "operation": "modify",
                    "purpose": "add list",
                    "changes": [{"type": "add", "target": "Page", "description": "render list"}],
                },
                {"filename": "src/app/broken.tsx", "operation": "rename", "changes": []},
            ]
        }
    )

    result = parse_model_output(raw, PatchPlan)

    assert isinstance(result, PartialOk)
    assert [patch.filename for patch in result.value.patches] == ["src/app/page.tsx"]
    assert result.warnings


def test_generated_file_list_accepts_fenced_json() -> None:
    raw = '```json\n[{"filename": "a.ts", "content": "export {}"}, {"filename": ""}]\n```'

    result = parse_model_output(raw, list[GeneratedFile])

    assert isinstance(result, PartialOk)
    assert [item.filename for item in result.value] == ["a.ts"]


def test_unparseable_reply_is_an_error() -> None:
    result = parse_model_output("I could not do that.", PatchPlan)

    assert isinstance(result, Err)
    assert result.raw == "I could not do that."


def test_generated_file_builds_diff_from_unified_text() -> None:
    entry = GeneratedFile.model_validate(
        {"filename": "a.ts", "operation": "modify", "unifiedDiff": "@@ -1,1 +1,1 @@\n-old\n+new\n"}
    )

    diff = entry.to_file_diff()

    assert diff.filename == "a.ts"
    assert diff.hunks[0].lines == ["-old", "+new"]


def test_truncation_detection() -> None:
    assert is_response_truncated(f'{START_MARKER}\n[{{"filename": "a.ts", "content": "x') is True
    assert is_response_truncated('[{"filename": "a.ts"') is True
    assert is_response_truncated(_wrap([{"filename": "a.ts"}])) is False
    assert is_response_truncated("") is False


def test_extract_json_block_without_end_marker_takes_rest() -> None:
    assert extract_json_block(f"noise {START_MARKER} {{\"a\": 1}}") == '{"a": 1}'
