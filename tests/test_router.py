from __future__ import annotations

from typing import Any, Dict, List

import pytest

from appgen.models.llm_client import LLMClient, LLMRetryError, LLMStatusError
from appgen.router import ModelRouter, RetryPolicy, RetryState, decide_retry, resolve_stage_config
from appgen.stages import STAGE_MODEL_CONFIG, StageConfig, StageType


class ScriptedClient(LLMClient):
    """Replays errors and replies in order while recording every payload."""

    def __init__(self, script: List[Any]) -> None:
        super().__init__(model="scripted")
        self._script = list(script)
        self.payloads: List[Dict[str, Any]] = []

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.payloads.append(payload)
        step = self._script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _router(client: LLMClient, delays: List[float], **kwargs: Any) -> ModelRouter:
    return ModelRouter(client, sleep=delays.append, jitter=lambda _upper: 0.0, **kwargs)


def test_router_retries_overload_then_succeeds() -> None:
    client = ScriptedClient([LLMStatusError(529, "overloaded"), LLMStatusError(529, "overloaded"), "ok"])
    delays: List[float] = []

    text = _router(client, delays)("sys", "user", "Stage 1: Intent Parser", StageType.STAGE_1_INTENT_PARSER)

    assert text == "ok"
    assert delays == [1.0, 2.0]
    models = [payload["model"] for payload in client.payloads]
    config = STAGE_MODEL_CONFIG[StageType.STAGE_1_INTENT_PARSER]
    assert models == [config.model, config.model, config.fallback_model]


def test_router_gives_up_after_budget_and_used_fallback_last() -> None:
    client = ScriptedClient([LLMStatusError(529, "overloaded")] * 3)
    delays: List[float] = []

    with pytest.raises(LLMRetryError):
        _router(client, delays)("sys", "user", "Stage 2: Patch Planner", StageType.STAGE_2_PATCH_PLANNER)

    config = STAGE_MODEL_CONFIG[StageType.STAGE_2_PATCH_PLANNER]
    assert len(client.payloads) == 3
    assert client.payloads[-1]["model"] == config.fallback_model


def test_router_does_not_retry_client_errors() -> None:
    client = ScriptedClient([LLMStatusError(400, "bad request"), "unused"])
    delays: List[float] = []

    with pytest.raises(LLMStatusError):
        _router(client, delays)("sys", "user", "Stage 1: Intent Parser", StageType.STAGE_1_INTENT_PARSER)

    assert len(client.payloads) == 1
    assert delays == []


def test_codegen_retry_doubles_token_budget_up_to_cap() -> None:
    configs = dict(STAGE_MODEL_CONFIG)
    configs[StageType.STAGE_3_CODE_GENERATOR] = StageConfig("big-model", "other-model", 12000, 0.1)
    client = ScriptedClient(["first", "second", "third"])
    router = _router(client, [], configs=configs)

    router("sys", "user", "Stage 3: Code Generator", StageType.STAGE_3_CODE_GENERATOR)
    router("sys", "user", "Stage 3: Code Generator (Retry)", StageType.STAGE_3_CODE_GENERATOR)
    router("sys", "user", "Stage 3: Code Generator (Retry - Template Only)", StageType.STAGE_3_CODE_GENERATOR)

    assert [payload["max_tokens"] for payload in client.payloads] == [12000, 24000, 12000]
    assert client.payloads[1]["temperature"] == 0.1

    capped = resolve_stage_config("Stage 3 (Retry)", StageType.STAGE_3_CODE_GENERATOR)
    assert capped.max_tokens == 40000


def test_missing_stage_type_uses_legacy_config() -> None:
    config = resolve_stage_config("anything", None)

    assert config == STAGE_MODEL_CONFIG[StageType.LEGACY_SINGLE_STAGE]


def test_decide_retry_is_pure() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    state = RetryState(primary_model="a", fallback_model="b", attempts_used=1, current_model="a")

    first = decide_retry(state, LLMStatusError(429, "slow down"), policy, jitter=0.5)
    second = decide_retry(
        RetryState("a", "b", attempts_used=2, current_model="a"), LLMStatusError(503, "down"), policy
    )
    final = decide_retry(RetryState("a", "b", attempts_used=3, current_model="b"), LLMStatusError(503, "x"), policy)

    assert first.retry is True
    assert first.delay == 1.5
    assert first.next_state.current_model == "a"
    assert second.delay == 2.0
    assert second.next_state.current_model == "b"
    assert final.retry is False
    assert state.attempts_used == 1


def test_retry_policy_from_config() -> None:
    policy = RetryPolicy.from_config({"retry": {"max_attempts": 5, "base_delay": 0.25}})

    assert policy.max_attempts == 5
    assert policy.base_delay == 0.25
    assert RetryPolicy.from_config(None) == RetryPolicy()
