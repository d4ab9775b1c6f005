from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".recall" / "state.sqlite"

SCHEMA_VERSION = 1


def connect(db_path: Path | str) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def connect_readonly(db_path: Path | str) -> sqlite3.Connection:
    """Open another application's database without taking write locks."""

    path = Path(db_path).expanduser().resolve()
    conn = sqlite3.connect(f"file:{path.as_posix()}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS checkpoints (
            repo_root TEXT NOT NULL,
            tool TEXT NOT NULL,
            last_extracted_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (repo_root, tool)
        );
        CREATE TABLE IF NOT EXISTS events (
            repo_root TEXT NOT NULL,
            tool TEXT NOT NULL,
            event_id TEXT NOT NULL,
            ts TEXT NOT NULL,
            type TEXT NOT NULL,
            user TEXT NOT NULL,
            summary TEXT NOT NULL,
            files_json TEXT NOT NULL DEFAULT '[]',
            PRIMARY KEY (repo_root, tool, event_id)
        );
        CREATE INDEX IF NOT EXISTS idx_events_repo_ts ON events(repo_root, ts);
        CREATE TABLE IF NOT EXISTS sync_attempts (
            id INTEGER PRIMARY KEY,
            repo_root TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            ok INTEGER,
            attempts INTEGER NOT NULL DEFAULT 0,
            events INTEGER NOT NULL DEFAULT 0,
            error TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_sync_attempts_repo ON sync_attempts(repo_root, started_at);
        """
    )
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()
