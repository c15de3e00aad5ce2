"""Write and load structured per-stage model response logs."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

__all__ = ["StageLogEntry", "StageLogger", "load_stage_log"]


@dataclass(slots=True)
class StageLogger:
    """Writes one JSON file per stage response under ``<logs>/stages/<project>/``."""

    logs_root: Path
    project_id: str

    @property
    def directory(self) -> Path:
        return self.logs_root / "stages" / slugify(self.project_id, fallback="project")

    def record(self, stage: str, response: str, metadata: Mapping[str, Any] | None = None) -> Path | None:
        """Persist ``response``; failures are logged and never raised."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stage": stage,
            "project_id": self.project_id,
            "metadata": dict(metadata or {}),
            "response_length": len(response),
            "response": response,
        }
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.directory / f"{slugify(stage, fallback='stage')}-{stamp}.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry, indent=2, default=str), encoding="utf-8")
        except OSError as error:
            LOGGER.error("Failed to write stage log for %s: %s", stage, error)
            return None
        LOGGER.debug("Stage log saved: %s", path)
        return path


@dataclass(slots=True)
class StageLogEntry:
    """In-memory representation of a stored stage log."""

    path: Path
    stage: str
    payload: Mapping[str, Any]

    @property
    def response(self) -> str:
        value = self.payload.get("response")
        return value if isinstance(value, str) else ""

    @property
    def metadata(self) -> Mapping[str, Any]:
        value = self.payload.get("metadata")
        if isinstance(value, Mapping):
            return value
        return {}


def load_stage_log(path: Path | str) -> StageLogEntry:
    """Load a structured stage log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    stage = str(payload.get("stage") or "").strip()
    return StageLogEntry(path=log_path, stage=stage, payload=payload)
