from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path
from typing import Any, Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from appgen.memory.store import AppStore  # noqa: E402
from appgen.structured import END_MARKER, START_MARKER  # noqa: E402


@pytest.fixture()
def store() -> Iterator[AppStore]:
    with AppStore(":memory:") as instance:
        yield instance


@pytest.fixture()
def boilerplate(tmp_path: Path) -> Path:
    """Create a minimal Next.js style boilerplate for worker tests."""

    root = tmp_path / "boilerplate"
    (root / "src" / "app").mkdir(parents=True)
    (root / "contracts").mkdir()
    (root / "node_modules" / "left-pad").mkdir(parents=True)

    (root / "package.json").write_text(
        textwrap.dedent(
            """
            {
              "name": "miniapp",
              "private": true,
              "dependencies": {"next": "15.0.0", "react": "19.0.0"}
            }
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (root / "src" / "app" / "page.tsx").write_text(
        textwrap.dedent(
            """
            export default function Page() {
              return <main>Hello</main>;
            }
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (root / "contracts" / "Token.sol").write_text("pragma solidity ^0.8.0;\n", encoding="utf-8")
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")
    return root


class ScriptedLLM:
    """``call_llm`` stand-in replying per stage-name prefix.

    The last queued reply for a prefix is reused once the others are consumed.
    Payloads that are not strings are wrapped in the JSON markers.
    """

    def __init__(self) -> None:
        self.replies: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str, str]] = []

    def reply(self, prefix: str, *payloads: Any) -> "ScriptedLLM":
        queue = self.replies.setdefault(prefix, [])
        for payload in payloads:
            if not isinstance(payload, str):
                payload = f"{START_MARKER}\n{json.dumps(payload)}\n{END_MARKER}"
            queue.append(payload)
        return self

    def __call__(self, system_prompt: str, user_prompt: str, stage_name: str, stage_type: Any = None) -> str:
        self.calls.append((stage_name, system_prompt, user_prompt))
        for prefix, queue in self.replies.items():
            if stage_name.startswith(prefix) and queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        raise AssertionError(f"Unexpected model call for {stage_name}")

    @property
    def stages(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    @staticmethod
    def intent(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "feature": "Leaderboard",
            "requirements": ["Show the top players"],
            "targetFiles": ["src/app/page.tsx"],
            "dependencies": [],
            "needsChanges": True,
            "isWeb3": False,
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def plan(filename: str = "src/app/page.tsx", operation: str = "modify") -> dict[str, Any]:
        return {
            "patches": [
                {
                    "filename": filename,
                    "operation": operation,
                    "purpose": "Render the leaderboard",
                    "changes": [{"type": "replace", "target": "Page", "description": "show players"}],
                }
            ]
        }


@pytest.fixture()
def llm() -> ScriptedLLM:
    return ScriptedLLM()
