"""File, diff, build and preview tooling used by the generation pipeline."""

from .build_check import BuildValidator, CommandValidator, ValidationReport
from .deploy_errors import DeploymentError, ParsedDeploymentErrors, format_errors_for_llm, parse_deployment_errors
from .diff import DiffHunk, FileDiff, PatchError, generate_diff, parse_unified_diff
from .patch import PatchSettings, apply_diff_hunks, apply_diffs_to_files, validate_diff
from .preview import DeploymentFailed, HTTPPreviewService, PreviewResult, PreviewService
from .stage_logs import StageLogEntry, StageLogger, load_stage_log
from .tool_exec import ToolExecutor, ToolResult
from .workspace import ProjectFile, read_all_files, write_files

__all__ = [
    "BuildValidator",
    "CommandValidator",
    "DeploymentError",
    "DeploymentFailed",
    "DiffHunk",
    "FileDiff",
    "HTTPPreviewService",
    "ParsedDeploymentErrors",
    "PatchError",
    "PatchSettings",
    "PreviewResult",
    "PreviewService",
    "ProjectFile",
    "StageLogEntry",
    "StageLogger",
    "ToolExecutor",
    "ToolResult",
    "ValidationReport",
    "apply_diff_hunks",
    "apply_diffs_to_files",
    "format_errors_for_llm",
    "generate_diff",
    "load_stage_log",
    "parse_deployment_errors",
    "parse_unified_diff",
    "read_all_files",
    "validate_diff",
    "write_files",
]
