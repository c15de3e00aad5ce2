from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from appgen.cli import app
from appgen.memory.schema import JobStatus
from appgen.memory.store import AppStore

runner = CliRunner()


def _init_config(tmp_path: Path) -> Path:
    config_path = tmp_path / "config.yaml"
    result = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    assert result.exit_code == 0, result.output

    config_data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    config_data["paths"].update(
        {
            "data": str(tmp_path / "data"),
            "db_path": str(tmp_path / "data" / "appgen.sqlite"),
            "logs": str(tmp_path / "data" / "logs"),
            "generated": str(tmp_path / "generated"),
        }
    )
    config_data["logging"]["level"] = "WARNING"
    config_path.write_text(yaml.safe_dump(config_data, sort_keys=False), encoding="utf-8")
    return config_path


def test_init_writes_defaults_and_refuses_overwrite(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"

    first = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    again = runner.invoke(app, ["init", "--config", str(config_path)], catch_exceptions=False)
    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"], catch_exceptions=False)

    assert first.exit_code == 0
    assert "Wrote default configuration" in first.output
    assert again.exit_code == 1
    assert "--force" in again.output
    assert forced.exit_code == 0
    config_data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert config_data["deployment"]["max_attempts"] == 2
    assert config_data["patch"]["context_match_ratio"] == 0.7


def test_submit_and_status_round_trip(tmp_path) -> None:
    config_path = _init_config(tmp_path)

    submitted = runner.invoke(
        app,
        ["submit", "Add dark mode", "--user", "alice", "--project", "proj-7", "--config", str(config_path)],
        catch_exceptions=False,
    )
    assert submitted.exit_code == 0, submitted.output
    job_id = submitted.output.strip().splitlines()[-1]

    config_data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    with AppStore.from_config(config_data) as store:
        job = store.get_job(job_id)
    assert job is not None
    assert job.status is JobStatus.PENDING
    assert job.context.is_follow_up is True
    assert job.context.existing_project_id == "proj-7"
    assert job.context.use_diff_based is True

    shown = runner.invoke(app, ["status", job_id, "--config", str(config_path)], catch_exceptions=False)
    listed = runner.invoke(app, ["status", "--user", "alice", "--config", str(config_path)], catch_exceptions=False)
    missing = runner.invoke(app, ["status", "nope", "--config", str(config_path)], catch_exceptions=False)

    assert f"Job {job_id} [pending] follow-up user=alice" in shown.output
    assert "project: proj-7" in shown.output
    assert job_id in listed.output
    assert missing.exit_code == 1


def test_process_reports_empty_queue_offline(tmp_path) -> None:
    config_path = _init_config(tmp_path)

    result = runner.invoke(app, ["process", "--offline", "--config", str(config_path)], catch_exceptions=False)

    assert result.exit_code == 0, result.output
    assert "No pending jobs." in result.output


def test_patches_and_rollback_of_unknown_patch(tmp_path) -> None:
    config_path = _init_config(tmp_path)

    listed = runner.invoke(app, ["patches", "proj-1", "--config", str(config_path)], catch_exceptions=False)
    rolled = runner.invoke(app, ["rollback", "missing", "--config", str(config_path)], catch_exceptions=False)

    assert "No patches for project proj-1." in listed.output
    assert rolled.exit_code == 1
    assert "Patch missing not found" in rolled.output


def test_missing_config_is_reported(tmp_path) -> None:
    result = runner.invoke(app, ["status", "--config", str(tmp_path / "absent.yaml")])

    assert result.exit_code != 0


def test_diff_then_apply_diff(tmp_path) -> None:
    old = tmp_path / "old.ts"
    new = tmp_path / "new.ts"
    old.write_text("const a = 1;\nconst b = 2;\n", encoding="utf-8")
    new.write_text("const a = 1;\nconst b = 3;\n", encoding="utf-8")

    diffed = runner.invoke(app, ["diff", str(old), str(new), "--name", "src/lib/values.ts"], catch_exceptions=False)

    assert diffed.exit_code == 0
    assert "--- a/src/lib/values.ts" in diffed.stdout
    assert "+const b = 3;" in diffed.stdout

    patch_file = tmp_path / "change.diff"
    patch_file.write_text(diffed.stdout.split("# ")[0], encoding="utf-8")
    output = tmp_path / "patched.ts"

    applied = runner.invoke(
        app,
        ["apply-diff", str(old), str(patch_file), "--output", str(output)],
        catch_exceptions=False,
    )

    assert applied.exit_code == 0
    assert "Patched" in applied.output
    assert output.read_text(encoding="utf-8") == new.read_text(encoding="utf-8")
    assert old.read_text(encoding="utf-8") == "const a = 1;\nconst b = 2;\n"


def test_parse_errors_text_and_json(tmp_path) -> None:
    log_file = tmp_path / "build.log"
    log_file.write_text(
        "Failed to compile.\n\n./src/app/page.tsx:4:2\nType error: Cannot find name 'foo'.\n",
        encoding="utf-8",
    )
    clean = tmp_path / "clean.log"
    clean.write_text("Build completed in 30s\n", encoding="utf-8")

    text = runner.invoke(app, ["parse-errors", str(log_file)], catch_exceptions=False)
    as_json = runner.invoke(app, ["parse-errors", str(log_file), "--json"], catch_exceptions=False)
    nothing = runner.invoke(app, ["parse-errors", str(clean)], catch_exceptions=False)

    assert "[TYPESCRIPT] src/app/page.tsx:4:2" in text.output
    errors = json.loads(as_json.output)
    assert errors[0]["file"] == "src/app/page.tsx"
    assert errors[0]["line"] == 4
    assert "No recognised errors." in nothing.output
