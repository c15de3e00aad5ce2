"""Typed records persisted by the app generator store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

JOB_TTL = timedelta(hours=24)


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _job_expiry() -> datetime:
    return utc_now() + JOB_TTL


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class JobStatus(str, Enum):
    """Lifecycle states for a generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


class JobContext(RecordModel):
    """Inputs captured when a job is submitted."""

    prompt: str = ""
    is_follow_up: bool = False
    existing_project_id: Optional[str] = None
    use_diff_based: bool = True


class GenerationJob(RecordModel):
    """A queued request to build or modify a project."""

    id: str
    user_id: str
    prompt: str
    status: JobStatus = JobStatus.PENDING
    context: JobContext = Field(default_factory=JobContext)
    project_id: Optional[str] = None
    app_type: str = "farcaster"
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: datetime = Field(default_factory=_job_expiry)


class Project(RecordModel):
    id: str
    user_id: str
    name: str
    description: str = ""
    preview_url: Optional[str] = None
    vercel_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PatchRecord(RecordModel):
    """Diffs applied to a project by one follow-up job."""

    id: str
    project_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    applied_at: datetime = Field(default_factory=utc_now)
    reverted_at: Optional[datetime] = None


class Deployment(RecordModel):
    id: str
    project_id: str
    platform: str = "vercel"
    url: str = ""
    status: str = "pending"
    build_logs: Optional[str] = None
    contract_addresses: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class SessionMessage(RecordModel):
    id: str
    session_id: str
    role: str
    content: str
    phase: Optional[str] = None
    changed_files: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class Session(RecordModel):
    """Requirements-gathering chat for one project."""

    id: str
    project_id: Optional[str] = None
    confirmed: bool = False
    final_requirements: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    messages: List[SessionMessage] = Field(default_factory=list)


__all__ = [
    "Deployment",
    "GenerationJob",
    "JOB_TTL",
    "JobContext",
    "JobStatus",
    "PatchRecord",
    "Project",
    "RecordModel",
    "Session",
    "SessionMessage",
    "utc_now",
]
