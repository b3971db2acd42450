"""
SQLite storage connector.

Provides the single durable store behind the job queue, the entity map
and the circuit breaker state:
- One shared WAL-mode connection per database file
- Write transactions that take the database lock up front
- Idempotent schema creation
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Sequence


SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    module_id TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'push',
    entity_type TEXT NOT NULL,
    action TEXT NOT NULL,
    local_id INTEGER,
    remote_id INTEGER,
    payload TEXT NOT NULL DEFAULT '{}',
    priority INTEGER NOT NULL DEFAULT 5,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    claim_token TEXT,
    claim_expires_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_due
    ON sync_jobs (status, next_attempt_at, priority);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_entity
    ON sync_jobs (module_id, entity_type, status);

CREATE TABLE IF NOT EXISTS entity_map (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    module_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    local_id INTEGER NOT NULL,
    remote_model TEXT NOT NULL,
    remote_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (module_id, entity_type, local_id),
    UNIQUE (module_id, entity_type, remote_id)
);

CREATE TABLE IF NOT EXISTS engine_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteDatabase:
    """
    Connector for the sync bridge SQLite database.

    The connection runs in autocommit mode; writes that must be atomic
    go through ``transaction()``, which issues ``BEGIN IMMEDIATE`` so that
    concurrent processes serialize on the database write lock.

    Example:
        db = SQLiteDatabase(Path(".sync-bridge.db"))

        with db.transaction() as conn:
            conn.execute("UPDATE sync_jobs SET status = 'done' WHERE id = ?", (1,))

        rows = db.fetch_all("SELECT * FROM sync_jobs WHERE status = ?", ("dead",))
    """

    def __init__(self, path: Path | str, timeout: float = 30.0) -> None:
        """
        Initialize the connector and create the schema.

        Args:
            path: Path to the SQLite file (created if missing)
            timeout: Seconds to wait for the database lock
        """
        self.path = Path(path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._connection: sqlite3.Connection | None = None
        self.initialize()

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            self.path,
            check_same_thread=False,
            timeout=self.timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @property
    def connection(self) -> sqlite3.Connection:
        """The shared connection, opened on first use."""
        if self._connection is None:
            self._connection = self._create_connection()
        return self._connection

    def initialize(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._lock:
            self.connection.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block inside an immediate write transaction."""
        with self._lock:
            conn = self.connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        Execute a single write statement and return the affected row count.

        Args:
            sql: SQL statement
            params: Query parameters

        Returns:
            Number of affected rows
        """
        with self._lock:
            cursor = self.connection.execute(sql, params)
            return cursor.rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute an INSERT and return the new row id."""
        with self._lock:
            cursor = self.connection.execute(sql, params)
            return int(cursor.lastrowid or 0)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Run a query and return the first row."""
        with self._lock:
            return self.connection.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a query and return all rows."""
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self) -> "SQLiteDatabase":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
