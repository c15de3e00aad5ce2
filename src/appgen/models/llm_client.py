"""Client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMStatusError",
    "LLMTransportError",
]


class LLMClientError(RuntimeError):
    """Base error raised for model client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMStatusError(LLMTransportError):
    """Raised when the provider answers with a non-success HTTP status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns payload that cannot be parsed."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting the retry budget for a model call."""


@dataclass(slots=True)
class LLMRequest:
    """Single model invocation in Messages API terms."""

    prompt: str
    model: str
    max_tokens: int
    system_prompt: Optional[str] = None
    temperature: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Render a transport-ready payload for the Messages API."""
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": self.prompt}],
        }
        if self.system_prompt:
            payload["system"] = self.system_prompt
        return payload


class LLMClient:
    """Returns the text of a single model turn.

    Retries live in :class:`appgen.router.ModelRouter`; a client performs
    exactly one transport call per :meth:`complete`.
    """

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def complete(self, request: LLMRequest) -> str:
        text = self._raw_invoke(request.to_payload())
        if not isinstance(text, str):
            raise LLMResponseFormatError("Model client returned a non-text payload.")
        return text

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send ``payload`` and return the reply text. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def parse_json(raw_response: str) -> Any:
        """Decode a model reply, tolerating fences, chatter and trailing commas.

        Candidates are tried in order: the reply as-is, the body of the first
        Markdown fence, then the first balanced object or array with trailing
        commas removed. Each candidate falls back to Python literal syntax.
        """
        text = raw_response.strip().translate(_TYPOGRAPHIC)
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.")

        tried: set[str] = set()
        for candidate in _json_candidates(text):
            if candidate in tried:
                continue
            tried.add(candidate)
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                literal = _python_literal(candidate)
                if literal is not None:
                    return literal
        raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


_TYPOGRAPHIC = str.maketrans({"\u201c": '"', "\u201d": '"', "\u00a0": " ", "\ufeff": ""})
_FENCE = re.compile(r"```[\w-]*[ \t]*\n(.*?)```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fence(payload: str) -> str:
    """Return the body of a leading Markdown fence, or ``payload`` unchanged."""
    if not payload.startswith("```"):
        return payload
    match = _FENCE.match(payload)
    return match.group(1).strip() if match else payload


def _json_candidates(text: str) -> Iterator[str]:
    yield text
    fenced = _FENCE.search(text)
    body = fenced.group(1).strip() if fenced else text
    yield body
    balanced = _first_balanced(body)
    if balanced is not None:
        yield _TRAILING_COMMA.sub(r"\1", balanced)


def _first_balanced(text: str) -> str | None:
    """Slice out the first complete JSON object or array in ``text``."""
    start = next((index for index, char in enumerate(text) if char in _CLOSERS), None)
    if start is None:
        return None
    pending: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char in _CLOSERS:
            pending.append(_CLOSERS[char])
        elif pending and char == pending[-1]:
            pending.pop()
            if not pending:
                return text[start : index + 1]
    return None


def _python_literal(candidate: str) -> Any | None:
    # Models sometimes answer with single quotes and True/False/None.
    try:
        value = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    return _as_json_value(value)


def _as_json_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _as_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_as_json_value(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
