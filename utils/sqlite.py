"""
Shared SQLite database handle for the persistent stores.

All SQLite-backed stores (templates, identities, codes and tokens) share one
database file. Each store declares its own tables through ``ensure_schema``;
applied schema versions are tracked per component in ``schema_version`` so
opening an existing database is idempotent.
"""

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a persistence operation fails."""


class SQLiteDatabase:
    """
    Connection factory plus a process-wide write lock for one database file.

    Connections are opened per operation in autocommit mode; callers that need
    a check-and-modify sequence use ``transaction()``, which takes the lock and
    issues ``BEGIN IMMEDIATE`` so the write lock is held from the first read.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._lock = threading.RLock()

        parent = Path(self.db_path).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)

        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    component TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    applied_at REAL NOT NULL,
                    PRIMARY KEY (component, version)
                )
            """)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with proper error handling."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one immediate transaction."""
        with self._lock:
            with self.connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")

    def ensure_schema(self, component: str, migrations: Sequence[Sequence[str]]) -> None:
        """
        Apply pending migrations for a component.

        Args:
            component: Name the versions are recorded under
            migrations: One list of SQL statements per schema version, oldest first
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT MAX(version) AS version FROM schema_version WHERE component = ?", (component,)
            ).fetchone()
            current = row["version"] or 0

            for version, statements in enumerate(migrations, start=1):
                if version <= current:
                    continue
                logger.info(f"Applying {component} schema migration to version {version}")
                for statement in statements:
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_version (component, version, applied_at) VALUES (?, ?, ?)",
                    (component, version, time.time()),
                )
