from __future__ import annotations

import shutil

import pytest

from appgen.structured import ToolCall
from appgen.tools.tool_exec import ToolExecutor


def _call(tool: str, *args: str, working_directory: str | None = None) -> ToolCall:
    return ToolCall(tool=tool, args=list(args), working_directory=working_directory)


@pytest.mark.parametrize(
    "call, fragment",
    [
        (_call("rm", "-rf", "src"), "Tool not allowed"),
        (_call("grep", "-r", "foo; rm -rf /"), "metacharacters"),
        (_call("cat", "../secrets.env"), "inside the project"),
        (_call("cat", "/etc/passwd"), "inside the project"),
        (_call("find", ".", "-exec", "rm", "{}", "+"), "find action not allowed"),
        (_call("find", ".", "-fprint0", "listing"), "find action not allowed"),
        (_call("grep", "--file=/etc/passwd", "src"), "inside the project"),
        (_call("tail", "--files0-from=../names"), "inside the project"),
    ],
)
def test_disallowed_calls_are_rejected(tmp_path, call: ToolCall, fragment: str) -> None:
    result = ToolExecutor(project_root=tmp_path).run(call)

    assert result.status == "rejected"
    assert fragment in result.output


def test_rejected_find_action_writes_nothing(tmp_path) -> None:
    result = ToolExecutor(project_root=tmp_path).run(_call("find", ".", "-fprint0", "listing"))

    assert result.status == "rejected"
    assert not (tmp_path / "listing").exists()


def test_option_values_inside_project_are_allowed(tmp_path) -> None:
    executor = ToolExecutor(project_root=tmp_path)

    assert executor._check("grep", ["--include=*.tsx", "-rn", "title", "src"]) is None


def test_working_directory_must_stay_inside_project(tmp_path) -> None:
    result = ToolExecutor(project_root=tmp_path).run(_call("ls", working_directory="../.."))

    assert result.status == "rejected"
    assert "outside project" in result.output


def test_execute_caps_number_of_calls(tmp_path) -> None:
    executor = ToolExecutor(project_root=tmp_path, max_calls=2)

    results = executor.execute([_call("rm"), _call("mv"), _call("cp")])

    assert [result.tool for result in results] == ["rm", "mv"]


@pytest.mark.skipif(shutil.which("grep") is None, reason="grep not installed")
def test_grep_runs_inside_project(tmp_path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "page.tsx").write_text("export const title = 'Hello';\n", encoding="utf-8")
    executor = ToolExecutor(project_root=tmp_path)

    found = executor.run(_call("grep", "-rn", "title", "src"))
    missing = executor.run(_call("grep", "-rn", "nothing-here", "src"))

    assert found.status == "ok"
    assert "page.tsx" in found.output
    assert missing.status == "ok"
    assert missing.exit_code == 1
    assert found.describe().startswith("$ grep -rn title src")
