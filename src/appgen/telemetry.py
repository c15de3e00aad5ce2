"""Structured telemetry events emitted as single-line JSON log records."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

TELEMETRY_LOGGER = logging.getLogger("appgen.telemetry")

__all__ = ["TELEMETRY_LOGGER", "emit_event"]


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    # FileDiff, ProjectFile, PreviewResult and friends
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _jsonable(to_dict())
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return str(value)


def emit_event(event: str, **fields: Any) -> None:
    """Log ``event`` with ``fields`` as one compact JSON object.

    Events go to the ``appgen.telemetry`` logger at INFO, so they can be routed
    or silenced independently of the module loggers.
    """
    if not TELEMETRY_LOGGER.isEnabledFor(logging.INFO):
        return
    record: dict[str, Any] = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    record.update((key, _jsonable(value)) for key, value in fields.items())
    TELEMETRY_LOGGER.info(json.dumps(record, separators=(",", ":"), default=str))
