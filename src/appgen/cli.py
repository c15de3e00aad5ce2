"""CLI commands for submitting, running and inspecting app generation jobs."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml

from .memory.schema import GenerationJob, JobContext
from .memory.store import AppStore
from .models import AnthropicClient, LLMClient
from .structured import END_MARKER, START_MARKER
from .tools.deploy_errors import format_errors_for_llm, parse_deployment_errors
from .tools.diff import PatchError, generate_diff, get_diff_stats
from .tools.patch import PatchSettings, apply_diff_to_content
from .worker import GenerationWorker, JobStateError

APP_HELP = "AI app generator CLI entry point."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "models": {
        "api_key_env": "ANTHROPIC_API_KEY",
        "base_url": "https://api.anthropic.com/v1/messages",
        "timeout": 300,
        "stages": {},
    },
    "retry": {
        "max_attempts": 3,
        "base_delay": 1.0,
        "max_jitter": 1.0,
    },
    "patch": {
        "context_match_ratio": 0.7,
        "min_context_for_search": 2,
        "search_sample_size": 5,
        "max_hunk_lines": 10,
    },
    "deployment": {
        "max_attempts": 2,
        "preview_api_base": "https://minidev.fun",
        "custom_domain_base": "minidev.fun",
        "token_env": "PREVIEW_AUTH_TOKEN",
        "timeout": 420,
    },
    "pipeline": {
        "app_type": "farcaster",
        "enable_context_gathering": True,
        "enable_diff_validation": True,
        "build_commands": [],
    },
    "paths": {
        "data": "data",
        "db_path": "data/appgen.sqlite",
        "logs": "data/logs",
        "generated": "generated",
        "boilerplate": "",
    },
    "logging": {
        "level": "INFO",
    },
}

app = typer.Typer(help=APP_HELP)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    _configure_logging(data)
    return data


def _configure_logging(config: Dict[str, Any]) -> None:
    level_name = str((config.get("logging") or {}).get("level") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class _OfflineLLMClient(LLMClient):
    """Local stub that answers every stage with a "no changes needed" reply."""

    def __init__(self) -> None:
        super().__init__("offline")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        stage = str((payload.get("metadata") or {}).get("stage") or "")
        if stage.startswith("Stage 0"):
            body: Any = {"needsContext": False, "toolCalls": [], "contextSummary": "Offline mode."}
        elif stage.startswith("Stage 1"):
            body = {
                "feature": "Offline preview",
                "requirements": [],
                "targetFiles": [],
                "dependencies": [],
                "needsChanges": False,
                "reason": "Offline stub client makes no changes.",
            }
        elif stage.startswith("Stage 2"):
            body = {"patches": []}
        else:
            body = []
        return f"{START_MARKER}\n{json.dumps(body)}\n{END_MARKER}"


def _build_client(config: Dict[str, Any], *, offline: bool) -> LLMClient:
    if offline:
        typer.echo("Using offline stub client.")
        return _OfflineLLMClient()
    try:
        return AnthropicClient.from_config(config)
    except ValueError as error:
        typer.echo(
            "No API key given. Set ANTHROPIC_API_KEY or CLAUDE_API_KEY, "
            f"or re-run with --offline to use the stub client. ({error})"
        )
        raise typer.Exit(code=1)


def _render_job(job: GenerationJob) -> None:
    kind = "follow-up" if job.context.is_follow_up else "initial"
    typer.echo(f"Job {job.id} [{job.status.value}] {kind} user={job.user_id}")
    if job.project_id or job.context.existing_project_id:
        typer.echo(f"  project: {job.project_id or job.context.existing_project_id}")
    if job.error:
        typer.echo(f"  error: {job.error}")
    if job.result:
        typer.echo(f"  result: {json.dumps(job.result, default=str)[:400]}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the generator configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; pass --force to overwrite it.")
        raise typer.Exit(code=1)
    _write_config(config_path, copy.deepcopy(DEFAULT_CONFIG_TEMPLATE))
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command()
def submit(
    prompt: str = typer.Argument(..., help="What to build or change."),
    user: str = typer.Option("local", "--user", "-u", help="Owner of the job."),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Existing project id; makes this a follow-up edit.",
    ),
    full: bool = typer.Option(
        False,
        "--full",
        help="Regenerate full files for follow-ups instead of using diffs.",
    ),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """Queue a generation job."""
    config_data = load_config(Path(config))
    app_type = str((config_data.get("pipeline") or {}).get("app_type") or "farcaster")
    context = JobContext(
        prompt=prompt,
        is_follow_up=project is not None,
        existing_project_id=project,
        use_diff_based=not full,
    )
    with AppStore.from_config(config_data) as store:
        job = store.submit_job(user, prompt, context, project_id=project, app_type=app_type)
    typer.echo(job.id)


@app.command("run-job")
def run_job(
    job_id: str = typer.Argument(..., help="Job to execute."),
    offline: bool = typer.Option(False, "--offline", help="Use the offline stub model client."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """Execute one job to completion."""
    config_data = load_config(Path(config))
    client = _build_client(config_data, offline=offline)
    with AppStore.from_config(config_data) as store:
        worker = GenerationWorker.from_config(store, client, config_data)
        try:
            job = worker.execute_job(job_id)
        except JobStateError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1)
        except Exception as error:
            typer.echo(f"Job {job_id} failed: {error}")
            raise typer.Exit(code=1)
    _render_job(job)


@app.command()
def process(
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of pending jobs to run."),
    offline: bool = typer.Option(False, "--offline", help="Use the offline stub model client."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """Run pending jobs, oldest first."""
    config_data = load_config(Path(config))
    client = _build_client(config_data, offline=offline)
    with AppStore.from_config(config_data) as store:
        worker = GenerationWorker.from_config(store, client, config_data)
        outcomes = worker.process_pending(limit=limit)
    if not outcomes:
        typer.echo("No pending jobs.")
        return
    for job_id, status in outcomes.items():
        typer.echo(f"{job_id}: {status.value}")


@app.command()
def status(
    job_id: Optional[str] = typer.Argument(None, help="Job to show; omit to list a user's jobs."),
    user: str = typer.Option("local", "--user", "-u"),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """Show one job or the most recent jobs of a user."""
    config_data = load_config(Path(config))
    with AppStore.from_config(config_data) as store:
        if job_id:
            job = store.get_job(job_id)
            if job is None:
                typer.echo(f"Job {job_id} not found.")
                raise typer.Exit(code=1)
            jobs = [job]
        else:
            jobs = store.list_user_jobs(user)
    if not jobs:
        typer.echo(f"No jobs for user {user}.")
        return
    for job in jobs:
        _render_job(job)


@app.command()
def patches(
    project_id: str = typer.Argument(..., help="Project whose patch history to list."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """List stored follow-up patches, newest first."""
    config_data = load_config(Path(config))
    with AppStore.from_config(config_data) as store:
        records = store.list_patches(project_id)
    if not records:
        typer.echo(f"No patches for project {project_id}.")
        return
    for record in records:
        marker = " (reverted)" if record.reverted_at else ""
        typer.echo(f"{record.id} {record.applied_at.isoformat()} {record.description}{marker}")


@app.command()
def rollback(
    patch_id: str = typer.Argument(..., help="Patch to revert."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c"),
) -> None:
    """Revert a stored patch by applying its diffs in reverse."""
    config_data = load_config(Path(config))
    with AppStore.from_config(config_data) as store:
        worker = GenerationWorker.from_config(store, _OfflineLLMClient(), config_data)
        try:
            restored = worker.rollback_patch(patch_id)
        except JobStateError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1)
    typer.echo(f"Restored {len(restored)} file(s):")
    for item in restored:
        typer.echo(f"- {item.filename}")


@app.command()
def diff(
    old: Path = typer.Argument(..., exists=True, dir_okay=False, help="Original file."),
    new: Path = typer.Argument(..., exists=True, dir_okay=False, help="Updated file."),
    name: Optional[str] = typer.Option(None, "--name", help="Filename used in the diff headers."),
) -> None:
    """Print a unified diff between two files."""
    filename = name or new.name
    try:
        result = generate_diff(old.read_text(encoding="utf-8"), new.read_text(encoding="utf-8"), filename)
    except PatchError as error:
        typer.echo(f"Failed to generate diff: {error}")
        raise typer.Exit(code=1)
    stats = get_diff_stats(result)
    typer.echo(result.unified_diff, nl=False)
    typer.echo(f"# {stats.hunks} hunk(s), +{stats.additions} -{stats.deletions}", err=True)


@app.command("apply-diff")
def apply_diff(
    target: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to patch."),
    patch_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Unified diff to apply."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write here instead of in place."),
) -> None:
    """Apply a unified diff with fuzzy hunk relocation."""
    content = target.read_text(encoding="utf-8")
    updated = apply_diff_to_content(content, patch_file.read_text(encoding="utf-8"), settings=PatchSettings())
    destination = output or target
    destination.write_text(updated, encoding="utf-8")
    if updated == content:
        typer.echo(f"No changes applied to {target}.")
    else:
        typer.echo(f"Patched {destination}.")


@app.command("parse-errors")
def parse_errors(
    log_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Build or deployment log."),
    as_json: bool = typer.Option(False, "--json", help="Emit parsed errors as JSON."),
) -> None:
    """Parse a build log into structured deployment errors."""
    text = log_file.read_text(encoding="utf-8", errors="replace")
    parsed = parse_deployment_errors(text)
    if as_json:
        typer.echo(json.dumps([error.to_dict() for error in parsed.errors], indent=2))
        return
    if not parsed.errors:
        typer.echo("No recognised errors.")
        return
    typer.echo(format_errors_for_llm(parsed))


if __name__ == "__main__":
    app()
