"""Chat session storage used while requirements are gathered for a project."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Sequence

from .schema import Session, SessionMessage, utc_now

SESSION_TTL = timedelta(hours=24)


def _as_iso(timestamp: datetime) -> str:
    """Normalise timestamps for storage in the sessions tables."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _load_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    data = json.loads(value)
    return default if data is None else data


class SessionStore:
    """Sessions and their messages, kept on a connection owned by the caller."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                id TEXT PRIMARY KEY,
                project_id TEXT,
                confirmed INTEGER NOT NULL DEFAULT 0,
                final_requirements TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                phase TEXT,
                changed_files TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_messages_session
                ON chat_messages(session_id, created_at);
            """
        )
        self._conn.commit()

    def create(self, project_id: Optional[str] = None, *, session_id: Optional[str] = None) -> Session:
        session = Session(id=session_id or str(uuid.uuid4()), project_id=project_id)
        self._conn.execute(
            """
            INSERT INTO chat_sessions (id, project_id, confirmed, final_requirements, created_at, updated_at)
            VALUES (?, ?, 0, NULL, ?, ?)
            """,
            (session.id, session.project_id, _as_iso(session.created_at), _as_iso(session.updated_at)),
        )
        self._conn.commit()
        return session

    def get(self, session_id: str) -> Optional[Session]:
        row = self._conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        return Session(
            id=row["id"],
            project_id=row["project_id"],
            confirmed=bool(row["confirmed"]),
            final_requirements=_load_json(row["final_requirements"], {}),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            messages=self.list_messages(session_id),
        )

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        phase: Optional[str] = None,
        changed_files: Sequence[str] = (),
    ) -> SessionMessage:
        if role not in {"user", "ai"}:
            raise ValueError(f"Unsupported message role: {role!r}")
        if not self._exists(session_id):
            raise KeyError(session_id)
        message = SessionMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            content=content,
            phase=phase,
            changed_files=list(changed_files),
        )
        self._conn.execute(
            """
            INSERT INTO chat_messages (id, session_id, role, content, phase, changed_files, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                session_id,
                role,
                content,
                phase,
                json.dumps(message.changed_files),
                _as_iso(message.created_at),
            ),
        )
        self._touch(session_id)
        self._conn.commit()
        return message

    def list_messages(self, session_id: str) -> List[SessionMessage]:
        cursor = self._conn.execute(
            "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
            (session_id,),
        )
        return [
            SessionMessage(
                id=row["id"],
                session_id=row["session_id"],
                role=row["role"],
                content=row["content"],
                phase=row["phase"],
                changed_files=_load_json(row["changed_files"], []),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def confirm(self, session_id: str, final_requirements: Mapping[str, Any]) -> Optional[Session]:
        """Mark the requirements as agreed; the session is then ready to build."""
        self._conn.execute(
            "UPDATE chat_sessions SET confirmed = 1, final_requirements = ?, updated_at = ? WHERE id = ?",
            (json.dumps(dict(final_requirements)), _as_iso(utc_now()), session_id),
        )
        self._conn.commit()
        return self.get(session_id)

    def migrate(self, session_id: str, project_id: str) -> int:
        """Attach a session (and its messages) to the project created from it."""
        cursor = self._conn.execute(
            "UPDATE chat_sessions SET project_id = ?, updated_at = ? WHERE id = ?",
            (project_id, _as_iso(utc_now()), session_id),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            return 0
        count = self._conn.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE session_id = ?", (session_id,)
        ).fetchone()[0]
        return int(count)

    def drop(self, session_id: str) -> bool:
        self._conn.execute("DELETE FROM chat_messages WHERE session_id = ?", (session_id,))
        cursor = self._conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    def expire(self, older_than: timedelta = SESSION_TTL, *, now: Optional[datetime] = None) -> int:
        """Drop sessions not updated within ``older_than``; returns how many were removed."""
        cutoff = _as_iso((now or utc_now()) - older_than)
        stale = [
            row["id"]
            for row in self._conn.execute(
                "SELECT id FROM chat_sessions WHERE updated_at < ?", (cutoff,)
            ).fetchall()
        ]
        for session_id in stale:
            self._conn.execute("DELETE FROM chat_messages WHERE session_id = ?", (session_id,))
            self._conn.execute("DELETE FROM chat_sessions WHERE id = ?", (session_id,))
        self._conn.commit()
        return len(stale)

    def _exists(self, session_id: str) -> bool:
        return self._conn.execute("SELECT 1 FROM chat_sessions WHERE id = ?", (session_id,)).fetchone() is not None

    def _touch(self, session_id: str) -> None:
        self._conn.execute(
            "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
            (_as_iso(utc_now()), session_id),
        )


__all__ = ["SESSION_TTL", "SessionStore"]
