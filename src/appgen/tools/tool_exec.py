"""Read-only shell tools the context gatherer may run inside a project directory."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Literal, Optional, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

ALLOWED_TOOLS = frozenset({"grep", "find", "cat", "ls", "head", "tail", "wc"})
_SHELL_METACHARACTERS = set("|;&$<>`\n")
_FORBIDDEN_FIND_FLAGS = frozenset({"-exec", "-execdir", "-delete", "-ok", "-okdir", "-fprint", "-fprint0", "-fprintf", "-fls"})

ToolStatus = Literal["ok", "failed", "rejected", "skipped"]


class ToolCallLike(Protocol):
    tool: str
    args: List[str]
    working_directory: Optional[str]


def _escapes_project(value: str) -> bool:
    path = PurePosixPath(value)
    return path.is_absolute() or ".." in path.parts


@dataclass(slots=True)
class ToolResult:
    """Outcome of one tool invocation."""

    tool: str
    args: List[str]
    status: ToolStatus
    output: str
    exit_code: int | None = None

    def describe(self) -> str:
        command = " ".join([self.tool, *self.args])
        if self.status == "ok":
            return f"$ {command}\n{self.output}"
        return f"$ {command}\n[{self.status}] {self.output}"


@dataclass(slots=True)
class ToolExecutor:
    """Runs allow-listed, read-only commands confined to ``project_root``."""

    project_root: Path
    max_calls: int = 3
    timeout: float = 10.0
    max_output_chars: int = 4000
    allowed_tools: frozenset[str] = ALLOWED_TOOLS

    def execute(self, calls: Sequence[ToolCallLike]) -> list[ToolResult]:
        if len(calls) > self.max_calls:
            LOGGER.warning("Context gatherer requested %d tool calls; running the first %d", len(calls), self.max_calls)
        return [self.run(call) for call in calls[: self.max_calls]]

    def run(self, call: ToolCallLike) -> ToolResult:
        tool = (call.tool or "").strip()
        args = [str(arg) for arg in call.args or []]
        problem = self._check(tool, args)
        if problem:
            LOGGER.warning("Rejected tool call %s %s: %s", tool, args, problem)
            return ToolResult(tool=tool, args=args, status="rejected", output=problem)

        cwd = self._resolve_directory(call.working_directory)
        if cwd is None:
            return ToolResult(
                tool=tool,
                args=args,
                status="rejected",
                output=f"Working directory outside project: {call.working_directory}",
            )
        if shutil.which(tool) is None:
            return ToolResult(tool=tool, args=args, status="skipped", output=f"Executable not available: {tool}")

        try:
            process = subprocess.run(  # noqa: S603  # tool and arguments are allow-listed above
                [tool, *args],
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(tool=tool, args=args, status="failed", output=f"Timed out after {self.timeout:.0f}s")
        except OSError as error:
            return ToolResult(tool=tool, args=args, status="failed", output=str(error))

        output = process.stdout or process.stderr
        if len(output) > self.max_output_chars:
            output = output[: self.max_output_chars] + "\n... (truncated)"
        # grep exits 1 when nothing matched
        ok = process.returncode == 0 or (tool == "grep" and process.returncode == 1)
        LOGGER.debug("Tool %s exited with %s", tool, process.returncode)
        return ToolResult(
            tool=tool,
            args=args,
            status="ok" if ok else "failed",
            output=output or "(no output)",
            exit_code=process.returncode,
        )

    def _check(self, tool: str, args: Iterable[str]) -> str | None:
        if tool not in self.allowed_tools:
            return f"Tool not allowed: {tool or '<empty>'}"
        for arg in args:
            if any(char in _SHELL_METACHARACTERS for char in arg):
                return f"Shell metacharacters are not allowed: {arg!r}"
            if tool == "find" and arg in _FORBIDDEN_FIND_FLAGS:
                return f"find action not allowed: {arg}"
            if arg.startswith("-"):
                # --file=/etc/passwd style options carry a path after "="
                name, sep, value = arg.partition("=")
                if not sep or not value:
                    continue
                if _escapes_project(value):
                    return f"Paths must stay inside the project: {name}={value}"
                continue
            if _escapes_project(arg):
                return f"Paths must stay inside the project: {arg}"
        return None

    def _resolve_directory(self, working_directory: str | None) -> Path | None:
        root = self.project_root.resolve()
        candidate = (root / (working_directory or ".")).resolve()
        if candidate != root and root not in candidate.parents:
            return None
        if not candidate.is_dir():
            return root
        return candidate


__all__ = ["ALLOWED_TOOLS", "ToolExecutor", "ToolResult"]
