from __future__ import annotations

from appgen.stages.base import StageRuntime
from appgen.stages.validate import (
    describe_errors,
    fix_deployment_errors,
    group_errors_by_file,
    preserve_contract_abis,
)
from appgen.tools.deploy_errors import DeploymentError
from appgen.tools.diff import generate_diff
from appgen.tools.workspace import ProjectFile

PAGE = "const count: number = 'one';\nexport default function Page() {\n  return <main>{count}</main>;\n}\n"
FIXED = "const count: number = 1;\nexport default function Page() {\n  return <main>{count}</main>;\n}\n"

BUILD_LOG = """Failed to compile.

./src/app/page.tsx:1:7
Type error: Type 'string' is not assignable to type 'number'.
"""

ABI_CONFIG = """export const GAME_ABI = [
  {
    "type": "function",
    "name": "play"
  },
  {
    "type": "function",
    "name": "score"
  }
] as const;
"""


def _files() -> list[ProjectFile]:
    return [ProjectFile("package.json", "{}"), ProjectFile("src/app/page.tsx", PAGE)]


def test_deployment_fix_applies_diff_and_returns_full_set(llm) -> None:
    diff = generate_diff(PAGE, FIXED, "src/app/page.tsx").unified_diff
    llm.reply("Stage 4", [{"filename": "src/app/page.tsx", "unifiedDiff": diff}])

    result = fix_deployment_errors(StageRuntime(call_llm=llm), BUILD_LOG, "", _files())

    assert result == [ProjectFile("package.json", "{}"), ProjectFile("src/app/page.tsx", FIXED)]
    assert llm.stages == ["Stage 4: Deployment Error Fixes"]
    assert llm.calls[0][2].startswith("The deployment build failed:")
    assert "src/app/page.tsx:1:7" in llm.calls[0][1]


def test_deployment_fix_accepts_full_content_fallback(llm) -> None:
    llm.reply(
        "Stage 4",
        [
            {"filename": "src/app/page.tsx", "content": FIXED},
            {"filename": "src/app/unknown.tsx", "content": "ignored"},
        ],
    )

    result = fix_deployment_errors(StageRuntime(call_llm=llm), BUILD_LOG, "", _files())

    assert [item.filename for item in result] == ["package.json", "src/app/page.tsx"]
    assert result[1].content == FIXED


def test_unparseable_deployment_output_skips_model(llm) -> None:
    files = _files()

    result = fix_deployment_errors(StageRuntime(call_llm=llm), "Deployment failed", "no details", files)

    assert result == files
    assert llm.calls == []


def test_errors_match_files_by_basename_when_paths_differ() -> None:
    errors = [DeploymentError(message="bad", category="typescript", file="app/page.tsx", line=3)]

    grouped = group_errors_by_file(errors, _files())

    assert list(grouped) == ["src/app/page.tsx"]
    assert describe_errors(grouped) == "src/app/page.tsx:\nLine 3: bad (typescript)"


def test_abi_changes_from_fixes_are_reverted() -> None:
    originals = [ProjectFile("src/lib/contractConfig.ts", ABI_CONFIG)]
    trimmed = ABI_CONFIG.replace(',\n  {\n    "type": "function",\n    "name": "score"\n  }', "")
    updates = [ProjectFile("src/lib/contractConfig.ts", trimmed)]

    warnings = preserve_contract_abis(originals, updates)

    assert len(warnings) == 1
    assert "1 entries removed" in warnings[0]
    assert updates[0].content == ABI_CONFIG


def test_renamed_abi_function_is_reverted() -> None:
    originals = [ProjectFile("src/lib/contractConfig.ts", ABI_CONFIG)]
    updates = [ProjectFile("src/lib/contractConfig.ts", ABI_CONFIG.replace('"score"', '"getScore"'))]

    warnings = preserve_contract_abis(originals, updates)

    assert "functions renamed: score" in warnings[0]
    assert updates[0].content == ABI_CONFIG
