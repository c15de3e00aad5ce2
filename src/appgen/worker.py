"""Generation job worker: runs pipelines, deploys previews and persists results."""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from .memory.schema import GenerationJob, JobStatus, Project
from .memory.store import AppStore
from .models.llm_client import LLMClient, LLMClientError
from .pipeline import DiffBasedOptions, PipelineResult, run_diff_based_pipeline, run_enhanced_pipeline
from .router import CallLLM, ModelRouter, RetryPolicy
from .stages import stage_configs_from_config
from .stages.base import StageError, StageRuntime
from .stages.validate import fix_deployment_errors
from .telemetry import emit_event
from .tools.build_check import BuildValidator, CommandValidator
from .tools.diff import FileDiff
from .tools.patch import PatchSettings, revert_diffs
from .tools.preview import (
    DeploymentFailed,
    HTTPPreviewService,
    PreviewError,
    PreviewResult,
    PreviewService,
    default_preview_url,
)
from .tools.stage_logs import StageLogger
from .tools.workspace import (
    ProjectFile,
    copy_boilerplate,
    drop_contract_files,
    project_dir,
    read_all_files,
    write_files,
)
from .utils.slug import fallback_project_name, generate_project_name

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_ENV = "PREVIEW_AUTH_TOKEN"
DEFAULT_MAX_DEPLOY_ATTEMPTS = 2

_BUILD_REQUEST = re.compile(r"BUILD THIS MINIAPP:\s*(.+?)(?:\n|$)")
_TIMEOUT_MARKERS = ("timeout", "ETIMEDOUT", "ECONNRESET")


class JobStateError(RuntimeError):
    """Raised when a job is unknown or may not run in its current state."""


def extract_user_request(prompt: str) -> str:
    """Pull the one-line request out of a templated build prompt."""
    if "BUILD THIS MINIAPP:" in prompt:
        match = _BUILD_REQUEST.search(prompt)
        if match:
            return match.group(1).strip()
        return prompt
    for line in prompt.splitlines():
        if line.startswith("User wants to create:"):
            return line
    return prompt


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, ConnectionResetError)):
        return True
    message = str(error)
    return any(marker in message for marker in _TIMEOUT_MARKERS)


@dataclass(slots=True)
class WorkerPaths:
    """Filesystem locations used while a job runs."""

    generated: Path = Path("generated")
    logs: Path = Path("logs")
    boilerplate: Path | None = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "WorkerPaths":
        paths = (config or {}).get("paths") or {}
        boilerplate = paths.get("boilerplate")
        return cls(
            generated=Path(paths.get("generated") or "generated"),
            logs=Path(paths.get("logs") or "logs"),
            boilerplate=Path(boilerplate) if boilerplate else None,
        )


@dataclass(slots=True)
class DeployOutcome:
    """Final state of the deployment loop for one job."""

    files: list[ProjectFile]
    url: str
    attempts: int
    preview: PreviewResult | None = None
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.preview is not None and not self.preview.failed


class GenerationWorker:
    """Executes generation jobs stored in an :class:`AppStore`."""

    def __init__(
        self,
        store: AppStore,
        call_llm: CallLLM,
        preview: PreviewService,
        *,
        paths: WorkerPaths | None = None,
        token: str | None = None,
        max_deploy_attempts: int = DEFAULT_MAX_DEPLOY_ATTEMPTS,
        options: DiffBasedOptions | None = None,
        settings: PatchSettings | None = None,
        validator_factory: Callable[[Path], BuildValidator | None] | None = None,
        domain_base: str | None = None,
    ) -> None:
        self._store = store
        self._call_llm = call_llm
        self._preview = preview
        self._paths = paths or WorkerPaths()
        self._token = token
        self._max_deploy_attempts = max(1, int(max_deploy_attempts))
        self._options = options or DiffBasedOptions()
        self._settings = settings or PatchSettings()
        self._validator_factory = validator_factory
        self._domain_base = domain_base or getattr(preview, "domain_base", None)

    @classmethod
    def from_config(
        cls,
        store: AppStore,
        client: LLMClient,
        config: Mapping[str, Any],
        *,
        preview: PreviewService | None = None,
    ) -> "GenerationWorker":
        """Wire the model router, preview client and settings from ``config.yaml``."""
        router = ModelRouter(
            client,
            policy=RetryPolicy.from_config(config),
            configs=stage_configs_from_config(config),
        )
        deployment = config.get("deployment") or {}
        pipeline = config.get("pipeline") or {}
        token_env = deployment.get("token_env") or DEFAULT_TOKEN_ENV

        validator_factory = None
        if pipeline.get("build_commands"):
            def validator_factory(workdir: Path) -> BuildValidator:
                return CommandValidator.from_config(config, workdir)

        return cls(
            store,
            router,
            preview or HTTPPreviewService.from_config(config),
            paths=WorkerPaths.from_config(config),
            token=os.getenv(token_env),
            max_deploy_attempts=int(deployment.get("max_attempts", DEFAULT_MAX_DEPLOY_ATTEMPTS)),
            options=DiffBasedOptions.from_config(config),
            settings=PatchSettings.from_config(config),
            validator_factory=validator_factory,
        )

    # Job lifecycle -------------------------------------------------------------------
    def execute_job(self, job_id: str) -> GenerationJob:
        """Run one job to a terminal state.

        Terminal jobs are rejected without side effects. A ``processing`` job
        is resumed as-is. Any failure marks the job ``failed`` and re-raises.
        """
        job = self._store.get_job(job_id)
        if job is None:
            raise JobStateError(f"Job {job_id} not found")
        if job.status.terminal:
            raise JobStateError(f"Job {job_id} is in {job.status.value} state, cannot process")

        try:
            if job.status is JobStatus.PENDING:
                self._store.update_job_status(job_id, JobStatus.PROCESSING)
            else:
                LOGGER.info("Resuming job %s already in processing", job_id)
            if job.context.is_follow_up:
                LOGGER.info("Job %s: follow-up edit for project %s", job_id, job.context.existing_project_id)
                self._run_follow_up(job)
            else:
                LOGGER.info("Job %s: initial generation", job_id)
                self._run_initial(job)
        except Exception as error:
            LOGGER.error("Job %s failed: %s", job_id, error)
            detail = error.detail if isinstance(error, DeploymentFailed) else None
            self._store.update_job_status(
                job_id,
                JobStatus.FAILED,
                result=detail or None,
                error=str(error) or error.__class__.__name__,
            )
            raise

        finished = self._store.get_job(job_id)
        if finished is None:
            raise JobStateError(f"Job {job_id} disappeared while processing")
        return finished

    def process_pending(self, limit: int = 10) -> dict[str, JobStatus]:
        """Run pending jobs oldest first; a failing job does not stop the batch."""
        expired = self._store.delete_expired_jobs()
        if expired:
            LOGGER.info("Deleted %d expired job(s)", expired)
        outcomes: dict[str, JobStatus] = {}
        for job in self._store.list_pending_jobs(limit=limit):
            try:
                outcomes[job.id] = self.execute_job(job.id).status
            except Exception as error:
                LOGGER.warning("Job %s ended in failure: %s", job.id, error)
                outcomes[job.id] = JobStatus.FAILED
        return outcomes

    # Initial generation --------------------------------------------------------------
    def _run_initial(self, job: GenerationJob) -> None:
        token = self._require_token()
        prompt = job.context.prompt or job.prompt
        request = extract_user_request(prompt)
        project_id = job.context.existing_project_id or job.project_id or str(uuid.uuid4())
        root = project_dir(self._paths.generated, project_id)
        root.mkdir(parents=True, exist_ok=True)
        if self._paths.boilerplate is not None:
            copy_boilerplate(self._paths.boilerplate, root)
        boilerplate = read_all_files(root)
        LOGGER.info("Project %s: %d boilerplate file(s)", project_id, len(boilerplate))

        runtime = self._runtime(project_id, job.app_type)
        result = run_enhanced_pipeline(
            runtime,
            prompt,
            boilerplate,
            is_initial=True,
            enable_context_gathering=self._options.enable_context_gathering,
            project_dir=root,
            validator=self._validator(root),
            settings=self._settings,
        )
        generated = result.files
        is_web3 = result.intent.is_web3
        if not is_web3:
            generated = drop_contract_files(root, generated)
        write_files(root, generated)

        outcome = self.deploy_with_retries(
            job.id,
            project_id,
            generated,
            root,
            is_web3=is_web3,
            app_type=job.app_type,
        )

        name = generate_project_name(result.intent.feature) if result.intent.feature else fallback_project_name()
        description = f"AI-generated project: {request[:100]}"
        if self._store.get_project(project_id) is None:
            self._store.create_project(
                Project(id=project_id, user_id=job.user_id, name=name, description=description, preview_url=outcome.url)
            )
        saved = read_all_files(root)
        if not is_web3:
            saved = [item for item in saved if not item.filename.startswith("contracts/")]
        self._store.replace_project_files(project_id, saved)

        if not outcome.succeeded:
            self._store.create_deployment(
                project_id,
                "vercel",
                outcome.url,
                "failed",
                build_logs=(outcome.preview.deployment_logs if outcome.preview else None) or outcome.error,
            )
            self._store.update_project(project_id, preview_url=outcome.url, name=name, description=description)
            raise DeploymentFailed(f"Deployment failed: {outcome.error}", detail=outcome.detail)

        preview = outcome.preview
        if preview is None:
            raise DeploymentFailed("Deployment reported success without a preview result", detail=outcome.detail)
        deployment_url = preview.vercel_url or outcome.url
        self._store.create_deployment(
            project_id,
            "vercel",
            deployment_url,
            "success",
            contract_addresses=preview.contract_addresses,
        )
        self._store.update_project(
            project_id,
            preview_url=deployment_url,
            vercel_url=preview.vercel_url,
            name=name,
            description=description,
        )
        self._store.update_job_status(
            job.id,
            JobStatus.COMPLETED,
            result={
                "projectId": project_id,
                "url": outcome.url,
                "port": preview.port,
                "success": True,
                "generatedFiles": [item.filename for item in outcome.files],
                "totalFiles": len(outcome.files),
                "previewUrl": preview.preview_url or outcome.url,
                "vercelUrl": preview.vercel_url,
                "projectName": name,
                "contractAddresses": dict(preview.contract_addresses),
            },
        )
        LOGGER.info("Job %s completed: project %s at %s", job.id, project_id, outcome.url)

    def deploy_with_retries(
        self,
        job_id: str,
        project_id: str,
        files: Sequence[ProjectFile],
        root: Path,
        *,
        is_web3: bool,
        app_type: str = "farcaster",
    ) -> DeployOutcome:
        """Deploy, fixing build errors between attempts.

        Build failures are parsed and fixed before the next attempt; timeouts
        are retried as-is. The outcome is returned rather than raised so the
        caller can persist the files either way.
        """
        token = self._require_token()
        current = list(files)
        url = self._preview_url(project_id)
        limit = self._max_deploy_attempts
        attempt = 0
        last_failure: PreviewResult | None = None

        while attempt < limit:
            attempt += 1
            LOGGER.info("Deployment attempt %d/%d for %s (%d files)", attempt, limit, project_id, len(current))
            emit_event("deployment.attempt", project_id=project_id, attempt=attempt, files=len(current))
            try:
                preview = self._preview.create_preview(
                    project_id,
                    current,
                    token,
                    app_type=app_type,
                    is_web3=is_web3,
                    job_id=job_id,
                )
            except (PreviewError, OSError, ValueError) as error:
                timeout = is_timeout_error(error)
                LOGGER.error("Preview request failed on attempt %d: %s", attempt, error)
                if attempt < limit:
                    if timeout:
                        self._store.update_job_status(
                            job_id,
                            JobStatus.PROCESSING,
                            result={
                                "status": "deployment_timeout",
                                "attempt": attempt,
                                "maxAttempts": limit,
                                "error": str(error),
                            },
                        )
                    emit_event("deployment.retry", project_id=project_id, attempt=attempt, reason="timeout" if timeout else "exception")
                    continue
                return DeployOutcome(
                    files=current,
                    url=url,
                    attempts=attempt,
                    error=str(error),
                    detail={
                        "status": "deployment_failed_exception",
                        "attempts": attempt,
                        "errorType": "timeout" if timeout else "other",
                    },
                )

            if preview.failed and preview.deployment_error:
                last_failure = preview
                LOGGER.error("Deployment failed on attempt %d: %s", attempt, preview.deployment_error[:200])
                self._store.update_job_status(
                    job_id,
                    JobStatus.PROCESSING,
                    result={
                        "status": "deployment_retry",
                        "attempt": attempt,
                        "maxAttempts": limit,
                        "error": preview.deployment_error[:500],
                        "hasLogs": bool(preview.deployment_logs),
                    },
                )
                if attempt >= limit:
                    break
                fixes_applied = True
                try:
                    current = self._apply_deployment_fixes(job_id, project_id, root, current, preview, app_type)
                except (LLMClientError, StageError) as error:
                    LOGGER.error("Deployment fixer failed on attempt %d; retrying unchanged files: %s", attempt, error)
                    fixes_applied = False
                self._store.update_job_status(
                    job_id,
                    JobStatus.PROCESSING,
                    result={
                        "status": "deployment_retrying",
                        "attempt": attempt + 1,
                        "maxAttempts": limit,
                        "fixesApplied": fixes_applied,
                    },
                )
                emit_event("deployment.retry", project_id=project_id, attempt=attempt, reason="build_error")
                continue

            if preview.failed:
                LOGGER.error("Deployment failed on attempt %d without error details", attempt)
                return DeployOutcome(
                    files=current,
                    url=url,
                    attempts=attempt,
                    preview=preview,
                    error="Deployment failed",
                    detail={"status": "deployment_failed", "attempts": attempt},
                )

            final_url = preview.vercel_url or preview.preview_url or url
            LOGGER.info("Preview ready for %s at %s", project_id, final_url)
            return DeployOutcome(files=current, url=final_url, attempts=attempt, preview=preview)

        error = (last_failure.deployment_error if last_failure else None) or "Deployment failed"
        LOGGER.error("All %d deployment attempt(s) failed for %s", attempt, project_id)
        logs = last_failure.deployment_logs if last_failure else None
        return DeployOutcome(
            files=current,
            url=url,
            attempts=attempt,
            preview=last_failure,
            error=error,
            detail={
                "status": "deployment_failed_all_attempts",
                "attempts": attempt,
                "deploymentError": error,
                "deploymentLogs": logs[:1000] if logs else None,
            },
        )

    def _apply_deployment_fixes(
        self,
        job_id: str,
        project_id: str,
        root: Path,
        files: list[ProjectFile],
        preview: PreviewResult,
        app_type: str,
    ) -> list[ProjectFile]:
        runtime = self._runtime(project_id, app_type)
        fixed = fix_deployment_errors(
            runtime,
            preview.deployment_error or "",
            preview.deployment_logs or "",
            files,
            settings=self._settings,
        )
        before = {item.filename: item.content for item in files}
        changed = [item for item in fixed if before.get(item.filename) != item.content]
        write_files(root, changed)
        self._store.upsert_project_files(project_id, changed)
        LOGGER.info("Job %s: deployment fixes touched %d file(s)", job_id, len(changed))
        emit_event("deployment.fix_applied", project_id=project_id, files=[item.filename for item in changed])
        return fixed

    # Follow-up edits -----------------------------------------------------------------
    def _run_follow_up(self, job: GenerationJob) -> None:
        token = self._require_token()
        context = job.context
        project_id = context.existing_project_id
        if not project_id:
            raise JobStateError("Follow-up job requires existing_project_id in context")
        prompt = context.prompt or job.prompt
        root = project_dir(self._paths.generated, project_id)
        files = self.load_project_files(project_id, root)
        if not files:
            raise JobStateError(f"No existing files found for project {project_id}")
        LOGGER.info("Loaded %d file(s) for follow-up edit of %s", len(files), project_id)

        runtime = self._runtime(project_id, job.app_type)
        validator = self._validator(root)
        if context.use_diff_based:
            result = run_diff_based_pipeline(
                runtime,
                prompt,
                files,
                options=self._options,
                project_dir=root,
                validator=validator,
                settings=self._settings,
            )
        else:
            result = run_enhanced_pipeline(
                runtime,
                prompt,
                files,
                is_initial=False,
                enable_context_gathering=self._options.enable_context_gathering,
                project_dir=root,
                validator=validator,
                settings=self._settings,
            )
        originals = {item.filename: item.content for item in files}
        updated = [item for item in result.files if originals.get(item.filename) != item.content]
        LOGGER.info("Follow-up changed %d file(s) with %d diff(s)", len(updated), len(result.diffs))

        if updated:
            write_files(root, updated)
            try:
                self._preview.update_preview_files(project_id, updated, token)
            except (PreviewError, OSError) as error:
                LOGGER.warning("Preview update failed for %s: %s", project_id, error)
            self._store.upsert_project_files(project_id, updated)
        self._save_patch(project_id, prompt, result)

        changed = [item.filename for item in updated]
        self._store.update_job_status(
            job.id,
            JobStatus.COMPLETED,
            result={
                "success": True,
                "projectId": project_id,
                "files": [{"filename": name} for name in changed],
                "diffs": [diff.to_dict() for diff in result.diffs],
                "changedFiles": changed,
                "generatedFiles": changed,
                "previewUrl": self._preview_url(project_id),
                "totalFiles": len(updated),
            },
        )
        LOGGER.info("Follow-up job %s completed", job.id)

    def _save_patch(self, project_id: str, prompt: str, result: PipelineResult) -> None:
        if not result.diffs:
            return
        changed = [diff.filename for diff in result.diffs]
        try:
            self._store.save_patch(
                project_id,
                {
                    "prompt": prompt,
                    "diffs": [diff.to_dict() for diff in result.diffs],
                    "changedFiles": changed,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                f"Updated {len(changed)} file(s): {', '.join(changed)}",
            )
        except sqlite3.Error as error:
            LOGGER.error("Failed to save patch for %s: %s", project_id, error)

    def load_project_files(self, project_id: str, root: Path) -> list[ProjectFile]:
        """Read the project from disk, restoring it from the store when missing."""
        if root.exists():
            return read_all_files(root)
        stored = self._store.get_project_files(project_id)
        if stored:
            LOGGER.info("Restoring %d file(s) for %s from the store", len(stored), project_id)
            write_files(root, stored)
        return stored

    def rollback_patch(self, patch_id: str) -> list[ProjectFile]:
        """Undo a stored follow-up patch; returns the restored files."""
        patch = self._store.get_patch(patch_id)
        if patch is None:
            raise JobStateError(f"Patch {patch_id} not found")
        if patch.reverted_at is not None:
            raise JobStateError(f"Patch {patch_id} was already reverted")
        diffs = [FileDiff.from_mapping(item) for item in patch.data.get("diffs") or []]
        root = project_dir(self._paths.generated, patch.project_id)
        files = self.load_project_files(patch.project_id, root)
        restored = revert_diffs(files, diffs, settings=self._settings)
        write_files(root, restored)
        self._store.upsert_project_files(patch.project_id, restored)
        self._store.revert_patch(patch_id)
        LOGGER.info("Reverted patch %s: %d file(s) restored", patch_id, len(restored))
        return restored

    # Helpers -------------------------------------------------------------------------
    def _require_token(self) -> str:
        if not self._token:
            raise PreviewError("Missing preview auth token")
        return self._token

    def _runtime(self, project_id: str, app_type: str) -> StageRuntime:
        return StageRuntime(
            call_llm=self._call_llm,
            stage_logger=StageLogger(self._paths.logs, project_id),
            app_type=app_type,
            max_hunk_lines=self._settings.max_hunk_lines,
        )

    def _validator(self, root: Path) -> BuildValidator | None:
        if self._validator_factory is None:
            return None
        return self._validator_factory(root)

    def _preview_url(self, project_id: str) -> str:
        if self._domain_base:
            return default_preview_url(project_id, self._domain_base)
        return default_preview_url(project_id)


__all__ = [
    "DeployOutcome",
    "GenerationWorker",
    "JobStateError",
    "WorkerPaths",
    "extract_user_request",
    "is_timeout_error",
]
