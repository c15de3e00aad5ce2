"""Compile-time validation hooks feeding the error-fixing stage."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Protocol, Sequence

from .deploy_errors import DeploymentError, parse_deployment_errors
from .workspace import ProjectFile, merge_files, write_files

LOGGER = logging.getLogger(__name__)

_TSC_LINE = re.compile(r"^(?P<file>[^\s(][^(]*)\((?P<line>\d+),(?P<column>\d+)\):\s*error\s+(?P<code>TS\d+):\s*(?P<message>.+)$", re.M)

DEFAULT_COMMANDS: tuple[tuple[str, ...], ...] = (("npx", "tsc", "--noEmit", "--pretty", "false"),)


@dataclass(slots=True)
class ValidationReport:
    """Result of validating a generated file set."""

    success: bool
    files: list[ProjectFile]
    errors: list[DeploymentError] = field(default_factory=list)
    summary: str = ""


class BuildValidator(Protocol):
    def validate(self, files: Sequence[ProjectFile], current_files: Sequence[ProjectFile]) -> ValidationReport: ...


def parse_compiler_output(output: str) -> list[DeploymentError]:
    """Errors from ``tsc`` style lines, falling back to the deployment log parser."""
    errors = [
        DeploymentError(
            message=match.group("message").strip(),
            category="typescript",
            file=match.group("file").strip().removeprefix("./"),
            line=int(match.group("line")),
            column=int(match.group("column")),
            code=match.group("code"),
        )
        for match in _TSC_LINE.finditer(output)
    ]
    if errors:
        return errors
    return parse_deployment_errors(output).errors


@dataclass(slots=True)
class CommandValidator:
    """Writes the merged file set into ``workdir`` and runs build commands there.

    Commands whose executable is missing are skipped, matching how optional
    static checks behave elsewhere.
    """

    workdir: Path
    commands: Sequence[Sequence[str]] = DEFAULT_COMMANDS
    timeout: float = 300.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any], workdir: Path) -> "CommandValidator":
        section = (config or {}).get("pipeline") or {}
        commands = section.get("build_commands") or DEFAULT_COMMANDS
        return cls(workdir=workdir, commands=[list(command) for command in commands])

    def validate(self, files: Sequence[ProjectFile], current_files: Sequence[ProjectFile]) -> ValidationReport:
        merged = merge_files(current_files, files)
        write_files(self.workdir, merged)

        errors: List[DeploymentError] = []
        ran = 0
        for command in self.commands:
            executable = command[0]
            if shutil.which(executable) is None:
                LOGGER.info("Skipping build check %s: executable not available", " ".join(command))
                continue
            try:
                process = subprocess.run(  # noqa: S603  # commands come from config
                    list(command),
                    cwd=self.workdir,
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                LOGGER.warning("Build check %s timed out after %.0fs", " ".join(command), self.timeout)
                continue
            ran += 1
            if process.returncode != 0:
                found = parse_compiler_output(f"{process.stdout}\n{process.stderr}")
                if not found:
                    found = [
                        DeploymentError(
                            message=f"{' '.join(command)} exited with code {process.returncode}",
                            category="build",
                            code="BUILD_ERROR",
                        )
                    ]
                errors.extend(found)

        summary = f"{len(errors)} error(s) from {ran} build check(s)"
        LOGGER.info("Build validation: %s", summary)
        return ValidationReport(success=not errors, files=list(files), errors=errors, summary=summary)


__all__ = [
    "BuildValidator",
    "CommandValidator",
    "DEFAULT_COMMANDS",
    "ValidationReport",
    "parse_compiler_output",
]
