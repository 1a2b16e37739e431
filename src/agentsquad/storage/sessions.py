"""Session record storage using SQLite."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from ..config import SquadConfig
from ..error_handling import NotFoundError, PersistenceError
from ..session.models import Session, SessionFilter, SessionStatus

logger = logging.getLogger(__name__)

COLUMNS = (
    "id",
    "title",
    "repo_path",
    "workspace_path",
    "branch",
    "status",
    "program",
    "width",
    "height",
    "auto_yes",
    "prompt",
    "created_at",
    "updated_at",
)


class SessionRepository(Protocol):
    """Durable storage of session records keyed by session ID."""

    def create(self, session: Session) -> None: ...

    def get(self, session_id: str) -> Session | None: ...

    def get_by_title(self, title: str) -> Session | None: ...

    def update(self, session: Session) -> None: ...

    def update_status(self, session_id: str, status: SessionStatus) -> datetime: ...

    def delete(self, session_id: str) -> None: ...

    def list(self, session_filter: SessionFilter | None = None) -> list[Session]: ...

    def delete_all(self) -> int: ...


class SessionStore:
    """SessionRepository backed by a single SQLite file.

    Every call opens its own connection, so concurrent access to distinct
    records is safe and the last write per record wins.
    """

    def __init__(self, config: SquadConfig):
        self.config = config
        self.db_path = config.database_path
        self._init_database()

    def _datetime_to_str(self, dt: datetime | None) -> str | None:
        """Convert datetime to string for SQLite storage."""
        if dt is None:
            return None
        return dt.isoformat()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Connection with commit on success, rollback on error."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10)
        except sqlite3.Error as e:
            msg = f"Cannot open session database {self.db_path}: {e}"
            raise PersistenceError(msg, original_error=e) from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            msg = f"Session database error: {e}"
            raise PersistenceError(msg, original_error=e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize the SQLite database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure database has current schema, recreating if necessary."""
        with self._get_connection() as conn:
            try:
                conn.execute(f"SELECT {', '.join(COLUMNS)} FROM sessions LIMIT 0")
            except sqlite3.OperationalError:
                logger.info("Session schema outdated or missing, recreating...")
                conn.execute("DROP TABLE IF EXISTS sessions")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    repo_path TEXT NOT NULL,
                    workspace_path TEXT,
                    branch TEXT NOT NULL,
                    status TEXT NOT NULL,
                    program TEXT NOT NULL,
                    width INTEGER DEFAULT 0,
                    height INTEGER DEFAULT 0,
                    auto_yes INTEGER DEFAULT 0,
                    prompt TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)",
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_title ON sessions(title)",
            )

    def _row_values(self, session: Session) -> tuple[Any, ...]:
        return (
            session.session_id,
            session.title,
            str(session.repo_path),
            str(session.workspace_path) if session.workspace_path else None,
            session.branch,
            session.status.value,
            session.program,
            session.width,
            session.height,
            int(session.auto_yes),
            session.prompt,
            self._datetime_to_str(session.created_at),
            self._datetime_to_str(session.updated_at),
        )

    def create(self, session: Session) -> None:
        """Insert a new record; fails if the ID is taken."""
        placeholders = ", ".join("?" * len(COLUMNS))
        try:
            with self._get_connection() as conn:
                conn.execute(
                    f"INSERT INTO sessions ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                    self._row_values(session),
                )
        except PersistenceError as e:
            if isinstance(e.original_error, sqlite3.IntegrityError):
                msg = f"Session {session.session_id} already exists"
                raise PersistenceError(msg, original_error=e.original_error) from e
            raise

        logger.debug("Stored session: %s", session)

    def update(self, session: Session) -> None:
        """Replace an existing record."""
        assignments = ", ".join(f"{column} = ?" for column in COLUMNS[1:])
        values = self._row_values(session)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE sessions SET {assignments} WHERE id = ?",
                (*values[1:], values[0]),
            )
            if cursor.rowcount == 0:
                msg = f"Session not found: {session.session_id}"
                raise NotFoundError(msg)

        logger.debug("Updated session: %s", session)

    def update_status(self, session_id: str, status: SessionStatus) -> datetime:
        """Set status and bump updated_at; returns the new timestamp."""
        updated_at = datetime.now(UTC)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, self._datetime_to_str(updated_at), session_id),
            )
            if cursor.rowcount == 0:
                msg = f"Session not found: {session_id}"
                raise NotFoundError(msg)
        return updated_at

    def get(self, session_id: str) -> Session | None:
        """Get a specific session by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            return self._row_to_session(row) if row else None

    def get_by_title(self, title: str) -> Session | None:
        """Most recently created session with the given title."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE title = ? ORDER BY created_at DESC LIMIT 1",
                (title,),
            ).fetchone()
            return self._row_to_session(row) if row else None

    def list(self, session_filter: SessionFilter | None = None) -> list[Session]:
        """All sessions matching the filter, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if session_filter:
            if session_filter.status is not None:
                clauses.append("status = ?")
                params.append(session_filter.status.value)
            if session_filter.branch is not None:
                clauses.append("branch = ?")
                params.append(session_filter.branch)
            if session_filter.repo_path is not None:
                clauses.append("repo_path = ?")
                params.append(str(session_filter.repo_path))
            if session_filter.auto_yes is not None:
                clauses.append("auto_yes = ?")
                params.append(int(session_filter.auto_yes))

        query = "SELECT * FROM sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        if session_filter and session_filter.limit:
            query += " LIMIT ?"
            params.append(session_filter.limit)

        with self._get_connection() as conn:
            return [self._row_to_session(row) for row in conn.execute(query, params)]

    def delete(self, session_id: str) -> None:
        """Remove a record; NotFoundError if it does not exist."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            if cursor.rowcount == 0:
                msg = f"Session not found: {session_id}"
                raise NotFoundError(msg)

        logger.info("Removed session %s from storage", session_id)

    def delete_all(self) -> int:
        """Remove every record."""
        with self._get_connection() as conn:
            count = conn.execute("DELETE FROM sessions").rowcount
        logger.info("Cleared %s sessions from storage", count)
        return count

    def get_stats(self) -> dict[str, int]:
        """Number of sessions per status."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT status, COUNT(*) AS count FROM sessions GROUP BY status",
            )
            return {row["status"]: row["count"] for row in cursor.fetchall()}

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        """Convert a database row to a Session."""
        return Session(
            session_id=row["id"],
            title=row["title"],
            repo_path=Path(row["repo_path"]),
            workspace_path=Path(row["workspace_path"]) if row["workspace_path"] else None,
            branch=row["branch"],
            status=SessionStatus(row["status"]),
            program=row["program"],
            width=row["width"] or 0,
            height=row["height"] or 0,
            auto_yes=bool(row["auto_yes"]),
            prompt=row["prompt"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
