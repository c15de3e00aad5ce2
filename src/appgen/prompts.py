"""Prompt templates shared across the generation stages."""

from __future__ import annotations

import json
from typing import Any, Iterable, Sequence

from .structured import END_MARKER, START_MARKER, IntentSpec, PatchPlan
from .tools.workspace import ProjectFile

MARKER_INSTRUCTION = (
    f"Surround the JSON with the exact markers {START_MARKER} and {END_MARKER} on their own lines. "
    "Do not include markdown fences, explanations, or any text outside the markers."
)

APP_TYPE_CONTEXT = {
    "farcaster": {
        "framework": "Next.js 15 App Router with TypeScript and Tailwind CSS",
        "auth": "Farcaster mini app SDK; useUser exposes fid, username, displayName, pfpUrl",
        "entry": "src/app/page.tsx",
    },
    "web3": {
        "framework": "Next.js 15 App Router with TypeScript and Tailwind CSS",
        "auth": "Wallet only; useUser exposes address, isConnected, balance, ensName, chainId",
        "entry": "src/app/page.tsx",
    },
}

CONTRACT_TEMPLATES = (
    "contracts/src/ERC20Template.sol",
    "contracts/src/ERC721Template.sol",
    "contracts/src/EscrowTemplate.sol",
)

TEMPLATE_ONLY_SUFFIX = (
    "\n\nTEMPLATE-ONLY MODE: You previously tried to create new contracts. "
    "Use ONLY ERC20Template.sol, ERC721Template.sol or EscrowTemplate.sol."
)


def render_user_request(prompt: str) -> str:
    return f"USER REQUEST: {prompt}"


def _file_listing(files: Iterable[ProjectFile]) -> str:
    return "\n".join(f"- {item.filename}" for item in files)


def _file_bodies(files: Iterable[ProjectFile], *, numbered: bool = False) -> str:
    blocks = []
    for item in files:
        if numbered:
            body = "\n".join(f"{index:4d}| {line}" for index, line in enumerate(item.content.split("\n"), start=1))
        else:
            body = item.content
        blocks.append(f"---{item.filename}---\n{body}")
    return "\n\n".join(blocks)


def _context_block(app_type: str) -> str:
    return json.dumps(APP_TYPE_CONTEXT.get(app_type, APP_TYPE_CONTEXT["farcaster"]), indent=2)


def render_context_gatherer_prompt(prompt: str, files: Sequence[ProjectFile], *, max_calls: int = 3) -> str:
    return f"""ROLE: Context Gatherer

TASK: Decide whether read-only inspection of the existing project is needed before editing it.

{render_user_request(prompt)}

CURRENT FILES AVAILABLE:
{_file_listing(files)}

AVAILABLE TOOLS: grep, cat, find, ls, head, tail, wc.
Each call is {{"tool": "grep", "args": ["pattern", "app/page.tsx"], "workingDirectory": "src", "reason": "..."}}.
Paths are relative to workingDirectory. Do not use pipes, OR patterns or shell metacharacters.
Limit yourself to {max_calls} tool calls.

Return ONLY JSON:
{{"needsContext": boolean, "toolCalls": [...], "contextSummary": "..."}}
Specific requests need no context; vague requests or edits to existing behaviour do.
"""


def render_intent_parser_prompt(app_type: str = "farcaster") -> str:
    return f"""ROLE: Intent Parser

TASK: Turn the user request into a structured specification.

BOILERPLATE CONTEXT:
{_context_block(app_type)}

Return ONLY JSON with these fields:
{{
  "feature": "short feature name",
  "requirements": ["..."],
  "targetFiles": ["src/app/page.tsx"],
  "dependencies": ["npm packages, if any"],
  "contractInteractions": {{"reads": [], "writes": []}},
  "needsChanges": true,
  "reason": "why changes are or are not needed",
  "isWeb3": false,
  "storageType": "localStorage | blockchain | none",
  "contractTemplate": "ERC20 | ERC721 | Escrow | none",
  "contractName": "optional contract name"
}}
Set isWeb3 only when the request needs tokens, NFTs, on-chain payments or other contract state.
"""


def render_patch_planner_prompt(
    intent: IntentSpec,
    files: Sequence[ProjectFile],
    *,
    is_initial: bool,
    app_type: str = "farcaster",
    max_hunk_lines: int = 10,
) -> str:
    if is_initial:
        diff_rules = "Plan complete-file changes. Do not emit diffs."
        patch_shape = '{"filename": "...", "operation": "create|modify|delete", "purpose": "...", "changes": [...]}'
    else:
        diff_rules = (
            "For every modified file also emit diffHunks and unifiedDiff against the numbered file content. "
            f"Keep each hunk to at most {max_hunk_lines} changed lines with 2-3 unchanged context lines around it, "
            "and prefer several small hunks over one large hunk."
        )
        patch_shape = (
            '{"filename": "...", "operation": "modify", "purpose": "...", "changes": [...], '
            '"diffHunks": [{"oldStart": 1, "oldLines": 3, "newStart": 1, "newLines": 4, "lines": [" ctx", "+add"]}], '
            '"unifiedDiff": "--- a/file\\n+++ b/file\\n@@ -1,3 +1,4 @@\\n ..."}'
        )
    return f"""ROLE: Patch Planner

INTENT:
{json.dumps(intent.to_wire(), indent=2)}

BOILERPLATE CONTEXT:
{_context_block(app_type)}

CURRENT FILES:
{_file_bodies(files, numbered=not is_initial)}

TASK: Plan the file changes needed for the intent. {diff_rules}
Each change is {{"type": "add|replace|remove", "target": "...", "description": "...", "location": "...", "dependencies": []}}.

OUTPUT FORMAT:
{START_MARKER}
{{"patches": [{patch_shape}], "implementationNotes": ["..."]}}
{END_MARKER}
{MARKER_INSTRUCTION}
"""


def render_code_generator_prompt(
    plan: PatchPlan,
    intent: IntentSpec,
    files: Sequence[ProjectFile],
    *,
    is_initial: bool,
    app_type: str = "farcaster",
) -> str:
    if is_initial:
        output = '[{"filename": "src/app/page.tsx", "operation": "create|modify", "content": "complete file content"}]'
        rules = "Return the complete content of every file you create or modify."
    else:
        output = (
            '[{"filename": "existing/file.tsx", "operation": "modify", "unifiedDiff": "--- a/...\\n+++ b/...\\n@@ ..."},'
            ' {"filename": "new/file.tsx", "operation": "create", "content": "complete file content"}]'
        )
        rules = (
            "Existing files MUST use operation 'modify' with a unifiedDiff and no content. "
            "New files MUST use operation 'create' with complete content and no diff."
        )
    web3_rules = ""
    if intent.is_web3:
        web3_rules = (
            "\nContracts may only be produced by editing the existing templates: "
            + ", ".join(CONTRACT_TEMPLATES)
            + ". Never create other .sol files."
        )
    return f"""ROLE: Code Generator

INTENT:
{json.dumps(intent.to_wire(), indent=2)}

PATCH PLAN:
{json.dumps(plan.to_wire(), indent=2)}

BOILERPLATE CONTEXT:
{_context_block(app_type)}

CURRENT FILES:
{_file_bodies(files, numbered=not is_initial)}

TASK: Implement the patch plan. {rules}{web3_rules}

OUTPUT FORMAT:
{START_MARKER}
{output}
{END_MARKER}
{MARKER_INSTRUCTION}
"""


def render_template_only_retry(prompt: str, invalid_files: Sequence[str]) -> str:
    listing = "\n".join(f"  - {name}" for name in invalid_files)
    templates = "\n".join(f"  - {name}" for name in CONTRACT_TEMPLATES)
    return f"""{render_user_request(prompt)}

RETRY REQUIRED. You attempted to create these contract files, which is not allowed:
{listing}

Use ONLY the existing templates and rename the contract inside the template if needed:
{templates}

Regenerate the code using only those templates."""


def render_error_fix_prompt(
    files: Sequence[ProjectFile],
    error_messages: str,
    *,
    is_initial: bool,
) -> str:
    if is_initial:
        output = '[{"filename": "EXACT_SAME_FILENAME", "content": "complete corrected content"}]'
        task = "Return complete corrected files."
    else:
        output = '[{"filename": "EXACT_SAME_FILENAME", "unifiedDiff": "--- a/...\\n+++ b/...\\n@@ ..."}]'
        task = "Return unified diff patches that fix only the listed errors and keep everything else intact."
    return f"""ROLE: Code Validator for Next.js + TypeScript

ERRORS FOUND:
{error_messages}

FILES TO FIX:
{_file_bodies(files, numbered=not is_initial)}

TASK: Fix the errors that would prevent the project from building. {task}

OUTPUT FORMAT:
{START_MARKER}
{output}
{END_MARKER}
{MARKER_INSTRUCTION}
"""


def render_deployment_fix_user_prompt(summary: str) -> str:
    return f"The deployment build failed: {summary}. Fix the listed errors with minimal unified diffs."


def describe_tool_results(outputs: Sequence[Any]) -> str:
    lines = [f"Tool {index}: {output}" for index, output in enumerate(outputs, start=1)]
    return "\n\nContext gathered:\n" + "\n".join(lines)


__all__ = [
    "APP_TYPE_CONTEXT",
    "CONTRACT_TEMPLATES",
    "MARKER_INSTRUCTION",
    "TEMPLATE_ONLY_SUFFIX",
    "describe_tool_results",
    "render_code_generator_prompt",
    "render_context_gatherer_prompt",
    "render_deployment_fix_user_prompt",
    "render_error_fix_prompt",
    "render_intent_parser_prompt",
    "render_patch_planner_prompt",
    "render_template_only_retry",
    "render_user_request",
]
