"""Convenience exports for appgen language-model client implementations."""

from .anthropic import AnthropicClient
from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMStatusError,
    LLMTransportError,
)

__all__ = [
    "AnthropicClient",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMStatusError",
    "LLMTransportError",
]
