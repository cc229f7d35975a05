"""
SQLite checkpoint store.

One row per (project, repository, file) recording the revision and chunk
count of the last successful sync. It is the only state that outlives a run.

Tables:
  - checkpoints: project_id + repository + path → revision, chunk_count,
    status, last_synced_at, error
  - run_locks: project_id → owner, acquired_at, expires_at (one lease per
    running sync, shared by every process using this database)
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .models import CheckpointEntry, CheckpointStatus
from .utils import CheckpointError


class SQLiteCheckpointStore:
    """
    SQLite-backed checkpoint store.

    Opens a short-lived connection per operation, so one instance can be
    shared by worker threads.
    """

    def __init__(self, db_path: str | Path, vacuum_on_startup: bool = False):
        """
        Initialize checkpoint database.

        Args:
            db_path: Path to SQLite database file.
            vacuum_on_startup: If True, run VACUUM on startup to optimize.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initializing checkpoint store at {self.db_path}")
        self._init_db()

        if vacuum_on_startup:
            self._vacuum()

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """
        Get a database connection with row factory.

        With ``immediate`` the body runs inside BEGIN IMMEDIATE, holding the
        database write lock from the first statement.
        """
        try:
            if immediate:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
            else:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise CheckpointError(f"Cannot open checkpoint database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise CheckpointError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    repository TEXT NOT NULL,
                    path TEXT NOT NULL,
                    revision TEXT NOT NULL,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    last_synced_at TEXT,
                    error TEXT NOT NULL DEFAULT '',
                    UNIQUE(project_id, repository, path)
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_checkpoints_project_repo
                ON checkpoints(project_id, repository)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_locks (
                    project_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

    def _vacuum(self) -> None:
        """Run VACUUM to optimize database file."""
        with self._get_connection() as conn:
            conn.execute("VACUUM")
        logger.debug("Checkpoint database vacuumed")

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CheckpointEntry:
        synced_at = row["last_synced_at"]
        return CheckpointEntry(
            project_id=row["project_id"],
            repository=row["repository"],
            path=row["path"],
            revision=row["revision"],
            chunk_count=row["chunk_count"],
            status=CheckpointStatus(row["status"]),
            last_synced_at=datetime.fromisoformat(synced_at) if synced_at else None,
            error=row["error"] or "",
        )

    # =========================================================================
    # Checkpoint Operations
    # =========================================================================

    def save(self, entry: CheckpointEntry) -> None:
        """Insert or update a checkpoint."""
        synced_at = entry.last_synced_at or datetime.now(timezone.utc)
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO checkpoints
                    (project_id, repository, path, revision, chunk_count, status, last_synced_at, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, repository, path) DO UPDATE SET
                    revision = excluded.revision,
                    chunk_count = excluded.chunk_count,
                    status = excluded.status,
                    last_synced_at = excluded.last_synced_at,
                    error = excluded.error
            """, (
                entry.project_id,
                entry.repository,
                entry.path,
                entry.revision,
                entry.chunk_count,
                entry.status.value,
                synced_at.isoformat(),
                entry.error,
            ))

    def get(self, project_id: str, repository: str, path: str) -> Optional[CheckpointEntry]:
        """Get a checkpoint, or None if the file was never synced."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT project_id, repository, path, revision, chunk_count,
                       status, last_synced_at, error
                FROM checkpoints
                WHERE project_id = ? AND repository = ? AND path = ?
            """, (project_id, repository, path))

            row = cursor.fetchone()
            return self._row_to_entry(row) if row else None

    def list_for_project(self, project_id: str) -> list[CheckpointEntry]:
        """All checkpoints of a project, ordered by repository and path."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT project_id, repository, path, revision, chunk_count,
                       status, last_synced_at, error
                FROM checkpoints
                WHERE project_id = ?
                ORDER BY repository, path
            """, (project_id,))
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def list_for_repository(self, project_id: str, repository: str) -> list[CheckpointEntry]:
        """All checkpoints of one repository within a project."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                SELECT project_id, repository, path, revision, chunk_count,
                       status, last_synced_at, error
                FROM checkpoints
                WHERE project_id = ? AND repository = ?
                ORDER BY path
            """, (project_id, repository))
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def delete(self, project_id: str, repository: str, path: str) -> bool:
        """Delete a checkpoint. Returns True if deleted."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                DELETE FROM checkpoints
                WHERE project_id = ? AND repository = ? AND path = ?
            """, (project_id, repository, path))
            return cursor.rowcount > 0

    # =========================================================================
    # Run Leases
    # =========================================================================

    def acquire_run_lease(self, project_id: str, owner: str, ttl_seconds: float) -> bool:
        """
        Take the run lease of a project.

        Succeeds when no lease exists, when the existing one has expired, or
        when owner already holds it.

        Args:
            project_id: Project to lease.
            owner: Identity of the caller, unique per process.
            ttl_seconds: Lease lifetime unless renewed.

        Returns:
            True if owner now holds the lease.
        """
        now = time.time()
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM run_locks WHERE project_id = ?",
                (project_id,),
            ).fetchone()
            if row and row["owner"] != owner and row["expires_at"] > now:
                return False
            if row and row["owner"] != owner:
                logger.warning(f"Taking over expired run lease of {project_id} from {row['owner']}")

            conn.execute("""
                INSERT INTO run_locks (project_id, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
            """, (project_id, owner, now, now + ttl_seconds))
            return True

    def renew_run_lease(self, project_id: str, owner: str, ttl_seconds: float) -> bool:
        """Extend a held lease. Returns False if owner no longer holds it."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE run_locks SET expires_at = ? WHERE project_id = ? AND owner = ?",
                (time.time() + ttl_seconds, project_id, owner),
            )
            return cursor.rowcount > 0

    def release_run_lease(self, project_id: str, owner: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "DELETE FROM run_locks WHERE project_id = ? AND owner = ?",
                (project_id, owner),
            )

    def get_run_lease(self, project_id: str) -> Optional[dict[str, Any]]:
        """Current lease row of a project, expired or not."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT project_id, owner, acquired_at, expires_at FROM run_locks WHERE project_id = ?",
                (project_id,),
            ).fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Bulk Operations
    # =========================================================================

    def get_stats(self, project_id: Optional[str] = None) -> dict[str, Any]:
        """Get checkpoint statistics, optionally for one project."""
        where = "WHERE project_id = ?" if project_id else ""
        params: tuple = (project_id,) if project_id else ()

        with self._get_connection() as conn:
            stats: dict[str, Any] = {}

            cursor = conn.execute(f"SELECT COUNT(*) FROM checkpoints {where}", params)
            stats["file_count"] = cursor.fetchone()[0]

            cursor = conn.execute(
                f"SELECT COUNT(DISTINCT repository) FROM checkpoints {where}", params
            )
            stats["repo_count"] = cursor.fetchone()[0]

            cursor = conn.execute(
                f"SELECT COALESCE(SUM(chunk_count), 0) FROM checkpoints {where}", params
            )
            stats["chunk_count"] = cursor.fetchone()[0]

            cursor = conn.execute(
                f"SELECT status, COUNT(*) FROM checkpoints {where} GROUP BY status", params
            )
            stats["by_status"] = {row[0]: row[1] for row in cursor.fetchall()}

            cursor = conn.execute(
                f"SELECT MAX(last_synced_at) FROM checkpoints {where}", params
            )
            stats["last_synced_at"] = cursor.fetchone()[0]

            # Get database size
            cursor = conn.execute("PRAGMA page_count")
            page_count = cursor.fetchone()[0]
            cursor = conn.execute("PRAGMA page_size")
            page_size = cursor.fetchone()[0]
            stats["db_size_bytes"] = page_count * page_size

            return stats

    def close(self) -> None:
        """Close any open connections (cleanup)."""
        # Connections are per operation; nothing is held open
        pass
