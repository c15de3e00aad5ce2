"""Production client that speaks the Anthropic Messages API."""

from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, Mapping, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMStatusError, LLMTransportError

__all__ = ["AnthropicClient", "Transport"]


Transport = Callable[[Dict[str, Any]], str]

DEFAULT_BASE_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


class AnthropicClient(LLMClient):
    """Thin adapter around the Messages API returning the first text block."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "claude-sonnet-4-20250514",
        transport: Optional[Transport] = None,
        timeout: float = 300.0,
    ) -> None:
        super().__init__(model=model)
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY") or os.getenv("CLAUDE_API_KEY")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self.last_usage: Dict[str, int] = {}

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, transport: Optional[Transport] = None) -> "AnthropicClient":
        section = config.get("models") or {}
        key_env = section.get("api_key_env") or "ANTHROPIC_API_KEY"
        return cls(
            api_key=os.getenv(key_env),
            base_url=section.get("base_url") or DEFAULT_BASE_URL,
            timeout=float(section.get("timeout", 300.0)),
            transport=transport,
        )

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except (OSError, ValueError) as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        return self._extract_text(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the Messages API."""
        import urllib.error
        import urllib.request

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "content-type": "application/json",
                "x-api-key": self._api_key or "",
                "anthropic-version": API_VERSION,
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Messages API response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMStatusError(error.code, message) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Messages API: {error.reason}") from error

        if status >= 400:
            raise LLMStatusError(status, "Unexpected HTTP status")

        return raw.decode("utf-8")

    def _extract_text(self, raw_response: str) -> str:
        """Return ``content[0].text`` and remember token usage."""
        if not raw_response:
            raise LLMResponseFormatError("Messages API returned an empty body.")
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError(f"Messages API returned non-JSON body: {raw_response[:200]}") from error
        if not isinstance(data, dict):
            raise LLMResponseFormatError("Messages API returned an unexpected payload.")

        usage = data.get("usage")
        if isinstance(usage, dict):
            self.last_usage = {
                "input_tokens": int(usage.get("input_tokens") or 0),
                "output_tokens": int(usage.get("output_tokens") or 0),
            }

        content = data.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict):
                text = first.get("text")
                if isinstance(text, str):
                    return text
        return ""
