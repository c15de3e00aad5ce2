"""Typed payloads emitted by the generation stages and the parser that reads them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, Optional, TypeVar, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError
from pydantic.alias_generators import to_camel
from pydantic.type_adapter import TypeAdapter

from .models.llm_client import LLMClient, LLMResponseFormatError, strip_code_fence
from .tools.diff import DiffHunk, FileDiff, parse_unified_diff

LOGGER = logging.getLogger(__name__)

START_MARKER = "__START_JSON__"
END_MARKER = "__END_JSON__"

T = TypeVar("T")

__all__ = [
    "END_MARKER",
    "START_MARKER",
    "Change",
    "ContextGatheringResult",
    "Err",
    "FilePatch",
    "GeneratedFile",
    "HunkPayload",
    "IntentSpec",
    "Ok",
    "ParseResult",
    "PartialOk",
    "PatchPlan",
    "ToolCall",
    "extract_json_block",
    "is_response_truncated",
    "parse_model_output",
]


class StageModel(BaseModel):
    """Base for model-emitted payloads: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolCall(StageModel):
    tool: str
    args: list[str] = Field(default_factory=list)
    working_directory: Optional[str] = None
    reason: Optional[str] = None


class ContextGatheringResult(StageModel):
    needs_context: bool = False
    tool_calls: list[ToolCall] = Field(default_factory=list)
    context_summary: str = ""


class IntentSpec(StageModel):
    """Structured reading of the user's request."""

    feature: str = Field(min_length=1)
    requirements: list[Any]
    target_files: list[str]
    dependencies: list[Any]
    needs_changes: StrictBool
    reason: str = ""
    contract_interactions: Any = None
    is_web3: bool = False
    storage_type: Optional[str] = None
    contract_template: Optional[str] = None
    contract_name: Optional[str] = None


class HunkPayload(StageModel):
    old_start: int
    old_lines: int = 0
    new_start: int
    new_lines: int = 0
    lines: list[str] = Field(default_factory=list)

    def to_hunk(self) -> DiffHunk:
        return DiffHunk(
            old_start=self.old_start,
            old_lines=self.old_lines,
            new_start=self.new_start,
            new_lines=self.new_lines,
            lines=list(self.lines),
        )


class Change(StageModel):
    type: str
    target: str = ""
    description: str = ""
    location: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    contract_interaction: Any = None


class FilePatch(StageModel):
    filename: str = Field(min_length=1)
    operation: Literal["create", "modify", "delete"]
    purpose: str = ""
    changes: list[Change]
    diff_hunks: list[HunkPayload] = Field(default_factory=list)
    unified_diff: Optional[str] = None


class PatchPlan(StageModel):
    patches: list[FilePatch]
    implementation_notes: Union[list[str], str, None] = None


class GeneratedFile(StageModel):
    """One file entry in Stage 3 or Stage 4 output."""

    filename: str = Field(min_length=1)
    operation: Optional[str] = None
    content: Optional[str] = None
    unified_diff: Optional[str] = None
    diff_hunks: list[HunkPayload] = Field(default_factory=list)

    def to_file_diff(self) -> FileDiff:
        """Structured diff for this entry; hunks come from the text when present."""
        if self.unified_diff:
            hunks = parse_unified_diff(self.unified_diff)
        else:
            hunks = [payload.to_hunk() for payload in self.diff_hunks]
        return FileDiff(filename=self.filename, hunks=hunks, unified_diff=self.unified_diff or "")


@dataclass(slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(slots=True)
class PartialOk(Generic[T]):
    value: T
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Err:
    reason: str
    raw: str = ""


ParseResult = Union[Ok[T], PartialOk[T], Err]


def extract_json_block(raw: str) -> str:
    """Return the text between the JSON markers, or the whole reply without fences."""
    text = raw or ""
    start = text.find(START_MARKER)
    if start != -1:
        body_start = start + len(START_MARKER)
        end = text.find(END_MARKER, body_start)
        text = text[body_start:] if end == -1 else text[body_start:end]
    text = text.strip()
    if "```" in text and not text.startswith("```"):
        text = text[text.find("```") :]
    return strip_code_fence(text).strip()


def is_response_truncated(raw: str) -> bool:
    """Heuristic for replies cut off by the token budget."""
    text = (raw or "").strip()
    if not text:
        return False
    if START_MARKER in text and END_MARKER not in text:
        return True
    body = extract_json_block(text)
    if not body:
        return False
    if body[0] not in "{[":
        return False
    return body[-1] not in "}]"


def parse_model_output(raw: str, target: Any) -> ParseResult[Any]:
    """Parse a model reply into ``target`` (a pydantic model or ``list[...]`` of one).

    List entries or nested list items that fail validation are dropped and
    reported through :class:`PartialOk`; anything unrecoverable is an :class:`Err`.
    """
    body = extract_json_block(raw)
    try:
        data = LLMClient.parse_json(body)
    except LLMResponseFormatError as error:
        return Err(str(error), raw=raw)

    if get_origin(target) is list:
        (item_type,) = get_args(target)
        if isinstance(data, dict):
            data = next((value for value in data.values() if isinstance(value, list)), None)
        if not isinstance(data, list):
            return Err("Expected a JSON array of entries.", raw=raw)
        items, warnings = _validate_items(item_type, data, "entry")
        if not items and data:
            return Err("; ".join(warnings) or "No valid entries.", raw=raw)
        return PartialOk(items, warnings) if warnings else Ok(items)

    adapter = TypeAdapter(target)
    try:
        return Ok(adapter.validate_python(data))
    except ValidationError as error:
        salvaged = _salvage_model(target, data)
        if salvaged is None:
            return Err(f"{getattr(target, '__name__', 'payload')} did not validate: {error}", raw=raw)
        value, warnings = salvaged
        return PartialOk(value, warnings)


def _validate_items(item_type: Any, entries: list[Any], label: str) -> tuple[list[Any], list[str]]:
    adapter = TypeAdapter(item_type)
    items: list[Any] = []
    warnings: list[str] = []
    for index, entry in enumerate(entries, start=1):
        try:
            items.append(adapter.validate_python(entry))
        except ValidationError as error:
            message = f"Dropped invalid {label} {index}: {error.errors()[0].get('msg', error)}"
            LOGGER.warning(message)
            warnings.append(message)
    return items, warnings


def _salvage_model(target: Any, data: Any) -> tuple[Any, list[str]] | None:
    """Drop invalid items from list-of-model fields and validate again."""
    if not isinstance(data, dict) or not isinstance(target, type) or not issubclass(target, BaseModel):
        return None
    repaired = dict(data)
    warnings: list[str] = []
    for name, info in target.model_fields.items():
        annotation = info.annotation
        if get_origin(annotation) is not list:
            continue
        (item_type,) = get_args(annotation)
        if not (isinstance(item_type, type) and issubclass(item_type, BaseModel)):
            continue
        key = info.alias or name
        entries = repaired.get(key, repaired.get(name))
        if not isinstance(entries, list):
            continue
        items, dropped = _validate_items(item_type, entries, name.rstrip("s"))
        if dropped:
            repaired[key] = [item.model_dump(by_alias=True) for item in items]
            warnings.extend(dropped)
    if not warnings:
        return None
    try:
        return target.model_validate(repaired), warnings
    except ValidationError:
        return None
