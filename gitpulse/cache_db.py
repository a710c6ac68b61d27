"""SQLite persistence for watched repositories and their last snapshots."""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Self

from gitpulse.models import RepositorySnapshot, WatchedRepository

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    """What watchers and coordinators need from persistence."""

    def record_snapshot(self, repository_id: str, snapshot: RepositorySnapshot) -> None: ...

    def record_poll(self, repository_id: str, polled_at: int) -> None: ...


@dataclass
class StoredRepository:
    """A repository row as persisted."""

    id: str
    project_id: str
    path: Path
    enabled: bool
    last_snapshot: RepositorySnapshot | None
    last_poll_at: int | None

    def to_watched(self) -> WatchedRepository:
        return WatchedRepository(
            id=self.id,
            project_id=self.project_id,
            path=self.path,
            enabled=self.enabled,
            last_snapshot=self.last_snapshot,
            last_poll_at=self.last_poll_at,
        )


_DB_LOCK = threading.Lock()
_SCHEMA_ENSURED: set[str] = set()


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """Ensure the database schema exists."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS repositories (
          id TEXT PRIMARY KEY,
          project_id TEXT NOT NULL,
          path TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,
          last_snapshot TEXT,
          snapshot_updated_at INTEGER,
          last_poll_at INTEGER,
          created_at INTEGER
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS repositories_project ON repositories (project_id)"
    )
    conn.commit()


def _decode_snapshot(repository_id: str, raw: str | None) -> RepositorySnapshot | None:
    if raw is None:
        return None
    try:
        return RepositorySnapshot.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        logger.warning("Ignoring corrupt stored snapshot for %s: %s", repository_id, exc)
        return None


def _row_to_repository(row: sqlite3.Row) -> StoredRepository:
    return StoredRepository(
        id=row["id"],
        project_id=row["project_id"],
        path=Path(row["path"]),
        enabled=bool(row["enabled"]),
        last_snapshot=_decode_snapshot(row["id"], row["last_snapshot"]),
        last_poll_at=row["last_poll_at"],
    )


class RepositoryDB:
    """Context manager for SQLite repository database access."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock_acquired = False

    def __enter__(self) -> Self:
        _DB_LOCK.acquire()
        self._lock_acquired = True
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), timeout=5)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

            db_key = str(self.db_path)
            if db_key not in _SCHEMA_ENSURED:
                _ensure_schema(self._conn)
                _SCHEMA_ENSURED.add(db_key)

            return self
        except Exception:
            if self._conn:
                self._conn.close()
                self._conn = None
            if self._lock_acquired:
                _DB_LOCK.release()
                self._lock_acquired = False
            raise

    def __exit__(self, *args: object) -> None:
        try:
            if self._conn:
                self._conn.commit()
                self._conn.close()
                self._conn = None
        finally:
            if self._lock_acquired:
                _DB_LOCK.release()
                self._lock_acquired = False

    @property
    def conn(self) -> sqlite3.Connection:
        """Get the connection (must be inside context)."""
        if self._conn is None:
            raise RuntimeError("RepositoryDB must be used as a context manager")
        return self._conn

    def get_repository(self, repository_id: str) -> StoredRepository | None:
        row = self.conn.execute(
            """
            SELECT id, project_id, path, enabled, last_snapshot, last_poll_at
            FROM repositories
            WHERE id = ?
            """,
            (repository_id,),
        ).fetchone()
        if not row:
            return None
        return _row_to_repository(row)

    def list_repositories(self, project_id: str | None = None) -> list[StoredRepository]:
        query = "SELECT id, project_id, path, enabled, last_snapshot, last_poll_at FROM repositories"
        params: tuple[str, ...] = ()
        if project_id is not None:
            query += " WHERE project_id = ?"
            params = (project_id,)
        query += " ORDER BY project_id, id"
        return [_row_to_repository(row) for row in self.conn.execute(query, params)]

    def upsert_repository(
        self, repository_id: str, project_id: str, path: Path, enabled: bool
    ) -> None:
        """Insert or update a repository's identity and enabled flag."""
        now = int(time.time())
        self.conn.execute(
            """
            INSERT INTO repositories (id, project_id, path, enabled, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              project_id = excluded.project_id,
              path = excluded.path,
              enabled = excluded.enabled
            """,
            (repository_id, project_id, str(path), int(enabled), now),
        )

    def set_enabled(self, repository_id: str, enabled: bool) -> bool:
        cursor = self.conn.execute(
            "UPDATE repositories SET enabled = ? WHERE id = ?",
            (int(enabled), repository_id),
        )
        return cursor.rowcount > 0

    def update_snapshot(self, repository_id: str, snapshot: RepositorySnapshot) -> None:
        now = int(time.time())
        self.conn.execute(
            """
            UPDATE repositories
            SET last_snapshot = ?, snapshot_updated_at = ?
            WHERE id = ?
            """,
            (json.dumps(snapshot.to_dict(), sort_keys=True), now, repository_id),
        )

    def update_poll(self, repository_id: str, polled_at: int) -> None:
        self.conn.execute(
            "UPDATE repositories SET last_poll_at = ? WHERE id = ?",
            (polled_at, repository_id),
        )

    def delete_repository(self, repository_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM repositories WHERE id = ?", (repository_id,))
        return cursor.rowcount > 0


class RepositoryStore:
    """Thread-safe facade opening one short transaction per call."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def _db(self) -> RepositoryDB:
        return RepositoryDB(self.db_path)

    def load_watched_repositories(self, project_id: str | None = None) -> list[WatchedRepository]:
        """Load persisted repositories with their last known snapshots."""
        with self._db() as db:
            return [stored.to_watched() for stored in db.list_repositories(project_id)]

    def list_repositories(self, project_id: str | None = None) -> list[StoredRepository]:
        with self._db() as db:
            return db.list_repositories(project_id)

    def get_repository(self, repository_id: str) -> StoredRepository | None:
        with self._db() as db:
            return db.get_repository(repository_id)

    def upsert_repository(self, repository: WatchedRepository) -> None:
        with self._db() as db:
            db.upsert_repository(
                repository.id, repository.project_id, repository.path, repository.enabled
            )

    def set_enabled(self, repository_id: str, enabled: bool) -> bool:
        with self._db() as db:
            return db.set_enabled(repository_id, enabled)

    def remove_repository(self, repository_id: str) -> bool:
        with self._db() as db:
            return db.delete_repository(repository_id)

    def record_snapshot(self, repository_id: str, snapshot: RepositorySnapshot) -> None:
        """Persist the last known good snapshot for crash recovery."""
        with self._db() as db:
            db.update_snapshot(repository_id, snapshot)

    def record_poll(self, repository_id: str, polled_at: int) -> None:
        with self._db() as db:
            db.update_poll(repository_id, polled_at)
