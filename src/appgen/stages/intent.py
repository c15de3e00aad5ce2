"""Stage 1: parse the user's request into an :class:`IntentSpec`."""

from __future__ import annotations

import logging

from ..prompts import render_intent_parser_prompt, render_user_request
from ..structured import Err, IntentSpec, parse_model_output
from . import StageType
from .base import StageError, StageRuntime, invoke_stage

LOGGER = logging.getLogger(__name__)

STAGE_NAME = "Stage 1: Intent Parser"


def parse_intent(runtime: StageRuntime, prompt: str) -> IntentSpec:
    """Return the parsed intent or raise :class:`StageError` when it is malformed."""
    raw = invoke_stage(
        runtime,
        StageType.STAGE_1_INTENT_PARSER,
        STAGE_NAME,
        render_intent_parser_prompt(runtime.app_type),
        render_user_request(prompt),
    )
    parsed = parse_model_output(raw, IntentSpec)
    if isinstance(parsed, Err):
        LOGGER.error("Intent parser output rejected: %s", parsed.reason)
        raise StageError(STAGE_NAME, f"invalid intent: {parsed.reason}")

    intent = parsed.value
    LOGGER.info(
        "Intent: feature=%r needs_changes=%s is_web3=%s targets=%s",
        intent.feature,
        intent.needs_changes,
        intent.is_web3,
        intent.target_files,
    )
    return intent


__all__ = ["STAGE_NAME", "parse_intent"]
