"""Model routing: per-stage model selection with retry, backoff and fallback."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Protocol

from .models.llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMRetryError,
    LLMStatusError,
    LLMTransportError,
)
from .stages import MAX_CODEGEN_TOKENS, STAGE_MODEL_CONFIG, StageConfig, StageType
from .telemetry import emit_event

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CallLLM",
    "ModelRouter",
    "RetryDecision",
    "RetryPolicy",
    "RetryState",
    "decide_retry",
    "is_retryable",
    "resolve_stage_config",
]

_RETRY_MARKER = "(Retry)"


class CallLLM(Protocol):
    """Callable seam the stages use to reach a model."""

    def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        stage_name: str,
        stage_type: StageType | None = None,
    ) -> str: ...


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_jitter: float = 1.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "RetryPolicy":
        section = (config or {}).get("retry") or {}
        return cls(
            max_attempts=max(1, int(section.get("max_attempts", 3))),
            base_delay=float(section.get("base_delay", 1.0)),
            max_jitter=float(section.get("max_jitter", 1.0)),
        )


@dataclass(frozen=True, slots=True)
class RetryState:
    """Immutable snapshot of a call's progress through the retry budget."""

    primary_model: str
    fallback_model: str | None
    attempts_used: int = 0
    current_model: str = ""

    @classmethod
    def start(cls, config: StageConfig) -> "RetryState":
        return cls(
            primary_model=config.model,
            fallback_model=config.fallback_model,
            attempts_used=0,
            current_model=config.model,
        )


@dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float
    next_state: RetryState
    reason: str


def is_retryable(error: BaseException) -> bool:
    """Overload, rate limit, server errors and network failures are transient."""
    if isinstance(error, LLMStatusError):
        return error.status in {429, 529} or error.status >= 500
    return isinstance(error, LLMTransportError)


def decide_retry(
    state: RetryState,
    error: BaseException,
    policy: RetryPolicy,
    *,
    jitter: float = 0.0,
) -> RetryDecision:
    """Pure retry decision for a failed attempt.

    ``state.attempts_used`` counts the attempt that just failed. When the
    attempt that failed was the penultimate one, the next state targets the
    fallback model so the final attempt runs against it.
    """
    used = state.attempts_used
    if not is_retryable(error):
        return RetryDecision(False, 0.0, state, f"non-retryable error: {error}")
    if used >= policy.max_attempts:
        return RetryDecision(False, 0.0, state, f"retry budget of {policy.max_attempts} exhausted")

    delay = policy.base_delay * (2 ** (used - 1)) + jitter
    next_state = state
    reason = "transient error"
    if used == policy.max_attempts - 1 and state.fallback_model:
        next_state = replace(state, current_model=state.fallback_model)
        reason = f"switching to fallback model {state.fallback_model}"
    return RetryDecision(True, delay, next_state, reason)


def resolve_stage_config(
    stage_name: str,
    stage_type: StageType | None,
    configs: Mapping[StageType, StageConfig] = STAGE_MODEL_CONFIG,
) -> StageConfig:
    """Pick the stage configuration; Stage 3 retries get a doubled token budget."""
    stage = stage_type or StageType.LEGACY_SINGLE_STAGE
    config = configs[stage]
    if _RETRY_MARKER in stage_name and stage is StageType.STAGE_3_CODE_GENERATOR:
        config = replace(config, max_tokens=min(config.max_tokens * 2, MAX_CODEGEN_TOKENS))
    return config


class ModelRouter:
    """Implements the ``call_llm`` seam on top of an :class:`LLMClient`."""

    def __init__(
        self,
        client: LLMClient,
        *,
        policy: RetryPolicy | None = None,
        configs: Mapping[StageType, StageConfig] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float], float] | None = None,
    ) -> None:
        self._client = client
        self._policy = policy or RetryPolicy()
        self._configs = dict(configs or STAGE_MODEL_CONFIG)
        self._sleep = sleep
        self._jitter = jitter or (lambda upper: random.uniform(0.0, upper))

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        stage_name: str,
        stage_type: StageType | None = None,
    ) -> str:
        return self.call(system_prompt, user_prompt, stage_name, stage_type)

    def call(
        self,
        system_prompt: str,
        user_prompt: str,
        stage_name: str,
        stage_type: StageType | None = None,
    ) -> str:
        """Invoke the stage's model, retrying transient failures."""
        config = resolve_stage_config(stage_name, stage_type, self._configs)
        state = RetryState.start(config)
        LOGGER.info("Model call %s: model=%s max_tokens=%d", stage_name, config.model, config.max_tokens)

        while True:
            state = replace(state, attempts_used=state.attempts_used + 1)
            request = LLMRequest(
                prompt=user_prompt,
                system_prompt=system_prompt,
                model=state.current_model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                metadata={"stage": stage_name},
            )
            started = time.monotonic()
            try:
                text = self._client.complete(request)
            except LLMClientError as error:
                decision = decide_retry(
                    state,
                    error,
                    self._policy,
                    jitter=self._jitter(self._policy.max_jitter),
                )
                if not decision.retry:
                    LOGGER.error(
                        "Model call %s failed after %d attempt(s): %s",
                        stage_name,
                        state.attempts_used,
                        error,
                    )
                    if is_retryable(error):
                        raise LLMRetryError(
                            f"{stage_name} failed after {state.attempts_used} attempt(s): {error}"
                        ) from error
                    raise
                LOGGER.warning(
                    "Model call %s attempt %d failed (%s); %s, retrying in %.2fs",
                    stage_name,
                    state.attempts_used,
                    error,
                    decision.reason,
                    decision.delay,
                )
                emit_event(
                    "router.retry",
                    stage=stage_name,
                    attempt=state.attempts_used,
                    model=state.current_model,
                    next_model=decision.next_state.current_model,
                    delay=round(decision.delay, 3),
                    error=str(error),
                )
                self._sleep(decision.delay)
                state = decision.next_state
                continue

            LOGGER.info(
                "Model call %s completed in %.2fs using %s (%d chars)",
                stage_name,
                time.monotonic() - started,
                state.current_model,
                len(text),
            )
            return text
