from __future__ import annotations

import datetime as dt
import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from . import db
from .events import Event, format_ts, now_ts, parse_iso8601


class StateStore:
    """Per-machine SQLite state: extraction checkpoints and the event shadow log.

    Checkpoints are keyed by (repo_root, tool). The shadow log mirrors the last
    successfully persisted event log so a baseline survives an unreadable
    `large.md` (for example when the team key is not available yet).
    """

    def __init__(self, db_path: Path | str = db.DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> StateStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get_checkpoints(self, repo_root: Path | str) -> dict[str, dt.datetime]:
        rows = self.conn.execute(
            "SELECT tool, last_extracted_at FROM checkpoints WHERE repo_root = ?",
            (str(repo_root),),
        ).fetchall()
        checkpoints: dict[str, dt.datetime] = {}
        for row in rows:
            parsed = parse_iso8601(str(row["last_extracted_at"]))
            if parsed is not None:
                checkpoints[str(row["tool"])] = parsed
        return checkpoints

    def set_checkpoints(
        self,
        repo_root: Path | str,
        checkpoints: Mapping[str, dt.datetime],
    ) -> None:
        """Advance checkpoints; a cursor never moves backwards."""

        now = now_ts()
        for tool, value in checkpoints.items():
            self.conn.execute(
                """
                INSERT INTO checkpoints(repo_root, tool, last_extracted_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(repo_root, tool) DO UPDATE SET
                    last_extracted_at = MAX(last_extracted_at, excluded.last_extracted_at),
                    updated_at = excluded.updated_at
                """,
                (str(repo_root), tool, format_ts(value), now),
            )
        self.conn.commit()

    def load_events(self, repo_root: Path | str) -> list[Event]:
        rows = self.conn.execute(
            """
            SELECT event_id, ts, type, tool, user, summary, files_json
            FROM events WHERE repo_root = ?
            ORDER BY ts, tool, event_id
            """,
            (str(repo_root),),
        ).fetchall()
        events: list[Event] = []
        for row in rows:
            events.append(
                Event.from_dict(
                    {
                        "id": row["event_id"],
                        "ts": row["ts"],
                        "type": row["type"],
                        "tool": row["tool"],
                        "user": row["user"],
                        "summary": row["summary"],
                        "files": _safe_json_list(row["files_json"]),
                    }
                )
            )
        return events

    def replace_events(self, repo_root: Path | str, events: Iterable[Event]) -> None:
        key = str(repo_root)
        with self.conn:
            self.conn.execute("DELETE FROM events WHERE repo_root = ?", (key,))
            self.conn.executemany(
                """
                INSERT INTO events(repo_root, tool, event_id, ts, type, user, summary, files_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        key,
                        event.tool,
                        event.id,
                        event.ts,
                        event.type,
                        event.user,
                        event.summary,
                        json.dumps(list(event.files)),
                    )
                    for event in events
                ],
            )

    def start_sync_attempt(self, repo_root: Path | str) -> int:
        cur = self.conn.execute(
            "INSERT INTO sync_attempts(repo_root, started_at) VALUES (?, ?)",
            (str(repo_root), now_ts()),
        )
        self.conn.commit()
        return int(cur.lastrowid or 0)

    def finish_sync_attempt(
        self,
        attempt_id: int,
        *,
        ok: bool,
        attempts: int,
        events: int = 0,
        error: str | None = None,
    ) -> None:
        self.conn.execute(
            """
            UPDATE sync_attempts
            SET finished_at = ?, ok = ?, attempts = ?, events = ?, error = ?
            WHERE id = ?
            """,
            (now_ts(), 1 if ok else 0, attempts, events, error, attempt_id),
        )
        self.conn.commit()

    def last_sync_attempt(self, repo_root: Path | str) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT started_at, finished_at, ok, attempts, events, error
            FROM sync_attempts WHERE repo_root = ?
            ORDER BY id DESC LIMIT 1
            """,
            (str(repo_root),),
        ).fetchone()
        if row is None:
            return None
        return dict(row)


def _safe_json_list(value: str | None) -> list[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed if isinstance(item, str)]
