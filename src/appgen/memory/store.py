"""Durable storage for generation jobs, projects, files, patches and deployments."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from ..tools.workspace import ProjectFile
from .schema import (
    Deployment,
    GenerationJob,
    JobContext,
    JobStatus,
    PatchRecord,
    Project,
    utc_now,
)
from .sessions import SessionStore

DEFAULT_DB_PATH = Path("data/appgen.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    return json.dumps(default if data is None else data)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class AppStore:
    """SQLite-backed persistence for the generation worker."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path = self.db_path.resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._open_connection()
        self._bootstrap()
        self.sessions = SessionStore(self._conn)

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "AppStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "AppStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))
        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "appgen.sqlite")

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS generation_jobs (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                project_id TEXT,
                app_type TEXT NOT NULL,
                prompt TEXT NOT NULL,
                context TEXT NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                expires_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_jobs_status_created
                ON generation_jobs(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_jobs_user
                ON generation_jobs(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                preview_url TEXT,
                vercel_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_files (
                project_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                content TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (project_id, filename)
            );

            CREATE TABLE IF NOT EXISTS project_patches (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                data TEXT NOT NULL,
                description TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                reverted_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_patches_project
                ON project_patches(project_id, applied_at DESC);

            CREATE TABLE IF NOT EXISTS project_deployments (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                url TEXT NOT NULL,
                status TEXT NOT NULL,
                build_logs TEXT,
                contract_addresses TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_deployments_project
                ON project_deployments(project_id, created_at DESC);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # Job operations ------------------------------------------------------------------
    def create_job(self, job: GenerationJob) -> GenerationJob:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO generation_jobs (
                    id, user_id, project_id, app_type, prompt, context, status, result, error,
                    created_at, started_at, completed_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.user_id,
                    job.project_id,
                    job.app_type,
                    job.prompt,
                    _dump_json(job.context.model_dump(), default={}),
                    job.status.value,
                    _dump_json(job.result, default=None) if job.result is not None else None,
                    job.error,
                    _as_iso(job.created_at),
                    _as_iso(job.started_at) if job.started_at else None,
                    _as_iso(job.completed_at) if job.completed_at else None,
                    _as_iso(job.expires_at),
                ),
            )
        return job

    def submit_job(
        self,
        user_id: str,
        prompt: str,
        context: JobContext,
        *,
        project_id: str | None = None,
        app_type: str = "farcaster",
    ) -> GenerationJob:
        job = GenerationJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            prompt=prompt,
            context=context,
            project_id=project_id,
            app_type=app_type,
        )
        return self.create_job(job)

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        row = self._conn.execute("SELECT * FROM generation_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return self._row_to_job(row)

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Optional[GenerationJob]:
        """Move a job to ``status``.

        ``processing`` without a result stamps ``started_at``; with a result it
        is a progress update and leaves the start time alone. Terminal states
        stamp ``completed_at``.
        """
        assignments = ["status = ?"]
        params: List[Any] = [status.value]
        now = _as_iso(utc_now())
        if status is JobStatus.PROCESSING and result is None:
            assignments.append("started_at = ?")
            params.append(now)
        if status.terminal:
            assignments.append("completed_at = ?")
            params.append(now)
        if result is not None:
            assignments.append("result = ?")
            params.append(_dump_json(dict(result), default={}))
        if error is not None:
            assignments.append("error = ?")
            params.append(error)
        params.append(job_id)
        with self._transaction():
            self._conn.execute(
                f"UPDATE generation_jobs SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
        return self.get_job(job_id)

    def list_pending_jobs(self, limit: int = 10) -> List[GenerationJob]:
        cursor = self._conn.execute(
            "SELECT * FROM generation_jobs WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (JobStatus.PENDING.value, limit),
        )
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def list_user_jobs(self, user_id: str, limit: int = 20) -> List[GenerationJob]:
        cursor = self._conn.execute(
            "SELECT * FROM generation_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def delete_expired_jobs(self, now: Optional[datetime] = None) -> int:
        cutoff = _as_iso(now or utc_now())
        with self._transaction():
            cursor = self._conn.execute("DELETE FROM generation_jobs WHERE expires_at < ?", (cutoff,))
        return cursor.rowcount

    def _row_to_job(self, row: sqlite3.Row) -> GenerationJob:
        return GenerationJob(
            id=row["id"],
            user_id=row["user_id"],
            project_id=row["project_id"],
            app_type=row["app_type"],
            prompt=row["prompt"],
            context=JobContext.model_validate(_load_json(row["context"], default={})),
            status=row["status"],
            result=_load_json(row["result"], default=None),
            error=row["error"],
            created_at=_from_iso(row["created_at"]),
            started_at=_from_iso(row["started_at"]),
            completed_at=_from_iso(row["completed_at"]),
            expires_at=_from_iso(row["expires_at"]),
        )

    # Project operations --------------------------------------------------------------
    def create_project(self, project: Project) -> Project:
        record = project.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO projects (
                    id, user_id, name, description, preview_url, vercel_url, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    name = excluded.name,
                    description = excluded.description,
                    preview_url = excluded.preview_url,
                    vercel_url = excluded.vercel_url,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.user_id,
                    record.name,
                    record.description,
                    record.preview_url,
                    record.vercel_url,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if not row:
            return None
        return self._row_to_project(row)

    def update_project(self, project_id: str, **updates: Any) -> Optional[Project]:
        project = self.get_project(project_id)
        if project is None:
            return None
        return self.create_project(project.model_copy(update=updates))

    def list_projects(self, user_id: Optional[str] = None) -> List[Project]:
        query = "SELECT * FROM projects"
        params: List[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC"
        return [self._row_to_project(row) for row in self._conn.execute(query, params).fetchall()]

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            preview_url=row["preview_url"],
            vercel_url=row["vercel_url"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # File operations -----------------------------------------------------------------
    def replace_project_files(self, project_id: str, files: Sequence[ProjectFile]) -> int:
        """Replace every stored file of a project; files containing NUL bytes are skipped."""
        safe = [item for item in files if "\x00" not in item.content]
        for item in files:
            if "\x00" in item.content:
                LOGGER.warning("Skipping file with null bytes: %s", item.filename)
        timestamp = _as_iso(utc_now())
        with self._transaction():
            self._conn.execute("DELETE FROM project_files WHERE project_id = ?", (project_id,))
            self._conn.executemany(
                """
                INSERT INTO project_files (project_id, filename, content, version, updated_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                [(project_id, item.filename, item.content, timestamp) for item in safe],
            )
        LOGGER.info("Saved %d file(s) for project %s", len(safe), project_id)
        return len(safe)

    def upsert_project_file(self, project_id: str, filename: str, content: str) -> None:
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO project_files (project_id, filename, content, version, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(project_id, filename) DO UPDATE SET
                    content = excluded.content,
                    version = project_files.version + 1,
                    updated_at = excluded.updated_at
                """,
                (project_id, filename, content, _as_iso(utc_now())),
            )

    def upsert_project_files(self, project_id: str, files: Sequence[ProjectFile]) -> int:
        saved = 0
        for item in files:
            if "\x00" in item.content:
                LOGGER.warning("Skipping file with null bytes: %s", item.filename)
                continue
            self.upsert_project_file(project_id, item.filename, item.content)
            saved += 1
        return saved

    def get_project_files(self, project_id: str) -> List[ProjectFile]:
        cursor = self._conn.execute(
            "SELECT filename, content FROM project_files WHERE project_id = ? ORDER BY filename ASC",
            (project_id,),
        )
        return [ProjectFile(filename=row["filename"], content=row["content"]) for row in cursor.fetchall()]

    # Patch operations ----------------------------------------------------------------
    def save_patch(self, project_id: str, data: Mapping[str, Any], description: str = "") -> PatchRecord:
        record = PatchRecord(id=str(uuid.uuid4()), project_id=project_id, data=dict(data), description=description)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO project_patches (id, project_id, data, description, applied_at, reverted_at)
                VALUES (?, ?, ?, ?, ?, NULL)
                """,
                (
                    record.id,
                    record.project_id,
                    _dump_json(record.data, default={}),
                    record.description,
                    _as_iso(record.applied_at),
                ),
            )
        return record

    def get_patch(self, patch_id: str) -> Optional[PatchRecord]:
        row = self._conn.execute("SELECT * FROM project_patches WHERE id = ?", (patch_id,)).fetchone()
        if not row:
            return None
        return self._row_to_patch(row)

    def list_patches(self, project_id: str) -> List[PatchRecord]:
        cursor = self._conn.execute(
            "SELECT * FROM project_patches WHERE project_id = ? ORDER BY applied_at DESC",
            (project_id,),
        )
        return [self._row_to_patch(row) for row in cursor.fetchall()]

    def revert_patch(self, patch_id: str) -> Optional[PatchRecord]:
        with self._transaction():
            self._conn.execute(
                "UPDATE project_patches SET reverted_at = ? WHERE id = ?",
                (_as_iso(utc_now()), patch_id),
            )
        return self.get_patch(patch_id)

    def _row_to_patch(self, row: sqlite3.Row) -> PatchRecord:
        return PatchRecord(
            id=row["id"],
            project_id=row["project_id"],
            data=_load_json(row["data"], default={}),
            description=row["description"],
            applied_at=_from_iso(row["applied_at"]),
            reverted_at=_from_iso(row["reverted_at"]),
        )

    # Deployment operations -----------------------------------------------------------
    def create_deployment(
        self,
        project_id: str,
        platform: str,
        url: str,
        status: str = "pending",
        *,
        build_logs: Optional[str] = None,
        contract_addresses: Optional[Mapping[str, str]] = None,
    ) -> Deployment:
        record = Deployment(
            id=str(uuid.uuid4()),
            project_id=project_id,
            platform=platform,
            url=url,
            status=status,
            build_logs=build_logs,
            contract_addresses=dict(contract_addresses or {}),
        )
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO project_deployments (
                    id, project_id, platform, url, status, build_logs, contract_addresses, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.project_id,
                    record.platform,
                    record.url,
                    record.status,
                    record.build_logs,
                    _dump_json(record.contract_addresses, default={}),
                    _as_iso(record.created_at),
                ),
            )
        return record

    def list_deployments(self, project_id: str) -> List[Deployment]:
        cursor = self._conn.execute(
            "SELECT * FROM project_deployments WHERE project_id = ? ORDER BY created_at DESC",
            (project_id,),
        )
        return [
            Deployment(
                id=row["id"],
                project_id=row["project_id"],
                platform=row["platform"],
                url=row["url"],
                status=row["status"],
                build_logs=row["build_logs"],
                contract_addresses=_load_json(row["contract_addresses"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]


__all__ = ["AppStore", "DEFAULT_DB_PATH"]
