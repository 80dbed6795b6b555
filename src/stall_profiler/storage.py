"""SQLite storage layer for stall-profiler diagnostic events."""

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 1


SCHEMA = """
CREATE TABLE IF NOT EXISTS profiler_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS diagnostic_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    episode_id TEXT,
    logged_at REAL NOT NULL,
    payload TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_diagnostic_events_name
    ON diagnostic_events(name);
CREATE INDEX IF NOT EXISTS idx_diagnostic_events_episode
    ON diagnostic_events(episode_id);
"""


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                conn.close()
                return
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except sqlite3.OperationalError:
            # Corrupted or foreign DB
            pass
        conn.close()
        _remove_database_files(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR REPLACE INTO profiler_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database_files(db_path: Path) -> None:
    db_path.unlink()
    for suffix in (".db-wal", ".db-shm"):
        side_file = db_path.with_suffix(suffix)
        if side_file.exists():
            side_file.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute("SELECT value FROM profiler_state WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection."""
    return sqlite3.connect(db_path)


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""

    pass


@contextmanager
def require_database(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands requiring database access.

    Raises:
        DatabaseNotAvailable: If database doesn't exist
    """
    import click

    if not db_path.exists():
        click.echo("Database not found. No diagnostic events have been recorded yet.")
        raise DatabaseNotAvailable()

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
    except sqlite3.OperationalError:
        return 0


def insert_diagnostic_event(
    conn: sqlite3.Connection,
    name: str,
    payload: dict,
    logged_at: float | None = None,
) -> int:
    """Store a diagnostic event. The payload's "id" field is indexed as episode_id."""
    episode_id = payload.get("id")
    cursor = conn.execute(
        """
        INSERT INTO diagnostic_events (name, episode_id, logged_at, payload)
        VALUES (?, ?, ?, ?)
        """,
        (
            name,
            str(episode_id) if episode_id is not None else None,
            logged_at if logged_at is not None else time.time(),
            json.dumps(payload),
        ),
    )
    conn.commit()
    return cursor.lastrowid  # type: ignore[return-value]


def get_diagnostic_events(
    conn: sqlite3.Connection,
    name: str | None = None,
    episode_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """Get diagnostic events, newest first."""
    query = "SELECT id, name, episode_id, logged_at, payload FROM diagnostic_events"
    conditions = []
    params: list = []
    if name is not None:
        conditions.append("name = ?")
        params.append(name)
    if episode_id is not None:
        conditions.append("episode_id = ?")
        params.append(episode_id)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY logged_at DESC, id DESC LIMIT ?"
    params.append(limit)

    return [
        {
            "id": r[0],
            "name": r[1],
            "episode_id": r[2],
            "logged_at": r[3],
            "payload": json.loads(r[4]),
        }
        for r in conn.execute(query, params).fetchall()
    ]


def prune_old_events(conn: sqlite3.Connection, retention_days: int = 30) -> int:
    """Delete diagnostic events older than the retention window.

    Returns:
        Number of events deleted

    Raises:
        ValueError: If retention days < 1
    """
    if retention_days < 1:
        raise ValueError("Retention days must be >= 1")

    cutoff = time.time() - (retention_days * 86400)
    cursor = conn.execute("DELETE FROM diagnostic_events WHERE logged_at < ?", (cutoff,))
    deleted = cursor.rowcount
    conn.commit()

    log.info("prune_complete", events_deleted=deleted)
    return deleted
