"""Parse build and deployment logs into structured, fixable errors."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .workspace import ProjectFile

__all__ = [
    "DeploymentError",
    "ESLINT_CONFIG_FILES",
    "ParsedDeploymentErrors",
    "format_errors_for_llm",
    "get_files_to_fix",
    "parse_deployment_errors",
]

_TS_ERROR = re.compile(r"\./([^:\n]+):(\d+):(\d+)\s*\n\s*Type error:\s*([^\n]+)")
_ESLINT_CONFIG = re.compile(r"ESLint:\s*Invalid Options:\s*([^\n]+)")
_ESLINT_RULE = re.compile(r"ESLint:\s*(\d+):(\d+)\s*-\s*(Error|Warning):\s*(.+?)\s*\(([^)]+)\)")
_COMMAND_EXIT = re.compile(r'Error:\s*Command\s*"([^"]+)"\s*exited\s*with\s*(\d+)')
_FAILED_COMPILE = re.compile(r"Failed to compile\.\s*\n\s*\n\s*([^\n]+)")

ESLINT_CONFIG_FILES = ("eslint.config.mjs", ".eslintrc.json", ".eslintrc.js")


@dataclass(slots=True)
class DeploymentError:
    """One error extracted from deployment output."""

    message: str
    severity: str = "error"
    category: str = "build"
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "message": self.message,
            "severity": self.severity,
            "category": self.category,
            "code": self.code,
            "context": self.context,
        }


@dataclass(slots=True)
class ParsedDeploymentErrors:
    errors: list[DeploymentError] = field(default_factory=list)
    has_typescript_errors: bool = False
    has_eslint_errors: bool = False
    has_build_errors: bool = False
    summary: str = "No errors found"


def parse_deployment_errors(error_output: str, logs: str = "") -> ParsedDeploymentErrors:
    """Match known TypeScript, ESLint and build failure shapes in the logs."""
    text = f"{error_output or ''}\n{logs or ''}"
    errors: list[DeploymentError] = []

    for match in _TS_ERROR.finditer(text):
        file, line, column, message = match.groups()
        errors.append(
            DeploymentError(
                file=file.strip(),
                line=int(line),
                column=int(column),
                message=f"TypeScript: {message.strip()}",
                category="typescript",
                code="TS_ERROR",
            )
        )

    for match in _ESLINT_CONFIG.finditer(text):
        errors.append(
            DeploymentError(
                message=f"ESLint Config: {match.group(1).strip()}",
                category="eslint",
                code="ESLINT_CONFIG",
            )
        )

    for match in _ESLINT_RULE.finditer(text):
        line, column, severity, message, rule = match.groups()
        errors.append(
            DeploymentError(
                line=int(line),
                column=int(column),
                message=f"{message.strip()} ({rule})",
                severity="error" if severity.lower() == "error" else "warning",
                category="eslint",
                code=rule,
            )
        )

    for match in _COMMAND_EXIT.finditer(text):
        command, exit_code = match.groups()
        errors.append(
            DeploymentError(
                message=f"Build failed: {command} exited with code {exit_code}",
                category="build",
                code="BUILD_ERROR",
            )
        )

    if "Failed to compile" in text:
        match = _FAILED_COMPILE.search(text)
        if match:
            context = match.group(1).strip()
            if not any(error.context == context for error in errors):
                errors.append(
                    DeploymentError(
                        message="Compilation failed",
                        category="build",
                        code="COMPILE_ERROR",
                        context=context,
                    )
                )

    return ParsedDeploymentErrors(
        errors=errors,
        has_typescript_errors=any(error.category == "typescript" for error in errors),
        has_eslint_errors=any(error.category == "eslint" for error in errors),
        has_build_errors=any(error.category == "build" for error in errors),
        summary=_summarise(errors),
    )


def _summarise(errors: Sequence[DeploymentError]) -> str:
    if not errors:
        return "No errors found"
    parts = []
    for category, label in (("typescript", "TypeScript"), ("eslint", "ESLint"), ("build", "build")):
        count = sum(1 for error in errors if error.category == category)
        if count:
            parts.append(f"{count} {label} error(s)")
    return f"Deployment failed with {', '.join(parts)}"


def format_errors_for_llm(parsed: ParsedDeploymentErrors) -> str:
    if not parsed.errors:
        return "No errors to fix"
    lines = ["DEPLOYMENT BUILD ERRORS:", "", parsed.summary, "", "ERRORS TO FIX:", ""]
    for error in parsed.errors:
        if error.file:
            location = error.file
            if error.line:
                location += f":{error.line}"
            if error.column:
                location += f":{error.column}"
        else:
            location = "Unknown location"
        lines.append(f"[{error.category.upper()}] {location}")
        lines.append(f"  {error.message}")
        if error.context:
            lines.append(f"  Context: {error.context}")
        lines.append("")
    return "\n".join(lines)


def get_files_to_fix(parsed: ParsedDeploymentErrors, files: Iterable[ProjectFile]) -> list[ProjectFile]:
    """Files named by errors, plus ESLint config files when ESLint complained."""
    wanted = {error.file for error in parsed.errors if error.file}
    if parsed.has_eslint_errors:
        wanted.update(ESLINT_CONFIG_FILES)
    return [item for item in files if item.filename in wanted]
