from __future__ import annotations

import json
import logging
from datetime import datetime
from types import SimpleNamespace

from appgen.telemetry import emit_event
from appgen.tools.stage_logs import StageLogger, load_stage_log
from appgen.tools.workspace import (
    ProjectFile,
    copy_boilerplate,
    drop_contract_files,
    filter_files_by_web3_requirement,
    filter_protected_config_files,
    merge_files,
    read_all_files,
    validate_no_new_contracts,
)
from appgen.utils.slug import fallback_project_name, generate_project_name, slugify


def test_copy_and_read_skip_dependencies_and_binaries(tmp_path, boilerplate) -> None:
    target = tmp_path / "generated" / "p1"
    copy_boilerplate(boilerplate, target)
    (target / "logo.png").write_bytes(b"\x89PNG\x00\x00")
    (target / ".env").write_text("SECRET=1\n", encoding="utf-8")

    names = [item.filename for item in read_all_files(target)]

    assert names == ["contracts/Token.sol", "package.json", "src/app/page.tsx"]
    assert not (target / "node_modules").exists()


def test_drop_contract_files_removes_tree(tmp_path, boilerplate) -> None:
    files = read_all_files(boilerplate)

    kept = drop_contract_files(boilerplate, files)

    assert not (boilerplate / "contracts").exists()
    assert all(not item.filename.startswith("contracts/") for item in kept)


def test_filters_hide_contracts_and_protected_configs() -> None:
    files = [
        ProjectFile("contracts/Token.sol", "c"),
        ProjectFile("package.json", "{}"),
        ProjectFile("src/app/page.tsx", "p"),
    ]

    assert [item.filename for item in filter_files_by_web3_requirement(files, False)] == [
        "package.json",
        "src/app/page.tsx",
    ]
    assert len(filter_files_by_web3_requirement(files, True)) == 3
    assert [item.filename for item in filter_protected_config_files(files)] == [
        "contracts/Token.sol",
        "src/app/page.tsx",
    ]


def test_new_contracts_are_flagged_unless_from_template() -> None:
    entries = [
        SimpleNamespace(filename="contracts/src/Game.sol", operation="create"),
        SimpleNamespace(filename="contracts/src/ERC20Template.sol", operation="create"),
        SimpleNamespace(filename="contracts/src/Token.sol", operation="modify"),
    ]

    check = validate_no_new_contracts(entries)

    assert check.is_valid is False
    assert check.invalid_files == ["contracts/src/Game.sol"]


def test_merge_files_overlays_and_appends() -> None:
    base = [ProjectFile("a.ts", "1"), ProjectFile("b.ts", "2")]
    updates = [ProjectFile("b.ts", "two"), ProjectFile("c.ts", "3")]

    merged = merge_files(base, updates)

    assert merged == [ProjectFile("a.ts", "1"), ProjectFile("b.ts", "two"), ProjectFile("c.ts", "3")]


def test_stage_logger_round_trip(tmp_path) -> None:
    logger = StageLogger(logs_root=tmp_path, project_id="Proj 42")

    path = logger.record("Stage 2: Patch Planner", '{"patches": []}', {"attempt": 1})

    assert path is not None
    assert path.parent == tmp_path / "stages" / "proj-42"
    entry = load_stage_log(path)
    assert entry.stage == "Stage 2: Patch Planner"
    assert entry.response == '{"patches": []}'
    assert entry.metadata == {"attempt": 1}
    assert entry.payload["response_length"] == len('{"patches": []}')


def test_slug_and_project_names() -> None:
    now = datetime(2024, 1, 5)

    assert slugify("Hello, World!") == "hello-world"
    assert slugify("", fallback="Item") == "item"
    long_slug = slugify("x" * 120, max_length=40)
    assert len(long_slug) <= 40
    assert generate_project_name("crypto price tracker", now=now) == "Crypto Price Tracker App"
    assert generate_project_name("NFT gallery", now=now) == "Nft Gallery"
    assert generate_project_name("update the template", now=now) == "Miniapp Jan 5"
    assert generate_project_name("!!!", now=now) == "Project Jan 5"
    assert fallback_project_name(now=now) == "Project Jan 5"


def test_emit_event_writes_json_record(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="appgen.telemetry"):
        emit_event("deployment.attempt", attempt=2, files=("a.ts",))

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "deployment.attempt"
    assert payload["attempt"] == 2
    assert payload["files"] == ["a.ts"]
