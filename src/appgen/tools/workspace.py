"""Project file sets on disk: reading, writing, boilerplate copies and filters."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

__all__ = [
    "PROTECTED_CONFIG_FILES",
    "ProjectFile",
    "ContractCheck",
    "copy_boilerplate",
    "drop_contract_files",
    "filter_files_by_web3_requirement",
    "filter_protected_config_files",
    "merge_files",
    "project_dir",
    "read_all_files",
    "validate_no_new_contracts",
    "write_files",
]

_SKIPPED_NAMES = frozenset(
    {
        "node_modules",
        ".next",
        ".git",
        "dist",
        "build",
        "pnpm-lock.yaml",
        "package-lock.json",
        "yarn.lock",
        "bun.lockb",
        "pnpm-workspace.yaml",
    }
)
_BOILERPLATE_EXCLUDES = (
    "node_modules",
    ".git",
    ".next",
    "pnpm-lock.yaml",
    "package-lock.json",
    "yarn.lock",
    "bun.lockb",
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

PROTECTED_CONFIG_FILES = frozenset(
    {
        "postcss.config.mjs",
        "postcss.config.js",
        "tailwind.config.js",
        "tailwind.config.ts",
        "next.config.ts",
        "next.config.js",
        "next.config.mjs",
        "tsconfig.json",
        "package.json",
        "package-lock.json",
        "pnpm-lock.yaml",
        "yarn.lock",
        "hardhat.config.js",
        "hardhat.config.ts",
        "contracts/hardhat.config.js",
        "contracts/hardhat.config.ts",
        "contracts/package.json",
        "contracts/package-lock.json",
    }
)


@dataclass(slots=True)
class ProjectFile:
    """A single text file of a generated project, keyed by relative path."""

    filename: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"filename": self.filename, "content": self.content}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProjectFile":
        return cls(filename=str(data.get("filename") or ""), content=str(data.get("content") or ""))


@dataclass(slots=True)
class ContractCheck:
    is_valid: bool
    invalid_files: list[str]


def project_dir(generated_root: Path, project_id: str) -> Path:
    return generated_root / project_id


def read_all_files(root: Path, *, base: str = "") -> list[ProjectFile]:
    """Recursively read text files under ``root``.

    Build output, lockfiles and dotfiles are skipped. Files holding NUL bytes or
    that fail to decode are treated as binary and left out.
    """
    files: list[ProjectFile] = []
    if not root.exists():
        return files
    for entry in sorted(root.iterdir(), key=lambda item: item.name):
        if entry.name in _SKIPPED_NAMES or entry.name.startswith("."):
            continue
        relative = f"{base}/{entry.name}" if base else entry.name
        if entry.is_dir():
            files.extend(read_all_files(entry, base=relative))
            continue
        try:
            content = entry.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Skipping unreadable file %s: %s", relative, error)
            continue
        if "\x00" in content:
            LOGGER.debug("Skipping binary file %s", relative)
            continue
        files.append(ProjectFile(filename=relative, content=_CONTROL_CHARS.sub("", content)))
    return files


def write_files(root: Path, files: Iterable[ProjectFile]) -> list[Path]:
    written: list[Path] = []
    for item in files:
        target = root / item.filename
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(item.content, encoding="utf-8")
        written.append(target)
    return written


def copy_boilerplate(source: Path, destination: Path) -> None:
    """Copy the starter tree into a fresh project directory."""
    if not source.is_dir():
        raise FileNotFoundError(f"Boilerplate directory not found: {source}")
    shutil.copytree(
        source,
        destination,
        ignore=shutil.ignore_patterns(*_BOILERPLATE_EXCLUDES),
        dirs_exist_ok=True,
    )


def filter_files_by_web3_requirement(files: Sequence[ProjectFile], is_web3: bool) -> list[ProjectFile]:
    """Hide ``contracts/`` from the model for apps that do not need a chain."""
    if is_web3:
        return list(files)
    filtered = [item for item in files if not item.filename.startswith("contracts/")]
    removed = len(files) - len(filtered)
    if removed:
        LOGGER.info("Filtered %d contract files for non-web3 app", removed)
    return filtered


def filter_protected_config_files(files: Sequence[Any]) -> list[Any]:
    """Drop generated entries that would overwrite boilerplate config files."""
    kept = []
    for item in files:
        if item.filename in PROTECTED_CONFIG_FILES:
            LOGGER.info("Keeping boilerplate version of protected file %s", item.filename)
            continue
        kept.append(item)
    return kept


def validate_no_new_contracts(files: Sequence[Any]) -> ContractCheck:
    """Flag ``.sol`` files created from scratch instead of from a template."""
    invalid = [
        item.filename
        for item in files
        if item.filename.endswith(".sol")
        and "Template.sol" not in item.filename
        and getattr(item, "operation", None) == "create"
    ]
    for name in invalid:
        LOGGER.error("Model attempted to create a new contract: %s", name)
    return ContractCheck(is_valid=not invalid, invalid_files=invalid)


def drop_contract_files(root: Path, files: Sequence[ProjectFile]) -> list[ProjectFile]:
    """Remove the ``contracts/`` tree from disk and from ``files``."""
    contracts = root / "contracts"
    if contracts.is_dir():
        shutil.rmtree(contracts)
    return [item for item in files if not item.filename.startswith("contracts/")]


def merge_files(base: Sequence[ProjectFile], updates: Sequence[ProjectFile]) -> list[ProjectFile]:
    """Overlay ``updates`` on ``base`` by filename, preserving ``base`` order."""
    replacements = {item.filename: item for item in updates}
    merged = [replacements.pop(item.filename, item) for item in base]
    merged.extend(item for item in updates if item.filename in replacements)
    return merged
