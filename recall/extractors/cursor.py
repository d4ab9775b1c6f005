from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import os
import sqlite3
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from ..db import connect_readonly
from ..errors import ExtractionError
from ..events import Event
from ..normalize import Normalizer, RawRecord, truncate_summary
from .types import collect_events, file_mtime, modified_after

logger = logging.getLogger(__name__)

COMPOSER_KEY = "composer.composerData"
PROMPTS_KEY = "aiService.prompts"


def workspace_storage_dir(home: Path, platform: str | None = None) -> Path:
    platform = platform or sys.platform
    if platform == "darwin":
        return home / "Library" / "Application Support" / "Cursor" / "User" / "workspaceStorage"
    if platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / "Cursor" / "User" / "workspaceStorage"
    return home / ".config" / "Cursor" / "User" / "workspaceStorage"


def folder_path(uri: str) -> Path | None:
    parsed = urlparse(uri)
    if parsed.scheme and parsed.scheme != "file":
        return None
    raw = unquote(parsed.path if parsed.scheme else uri)
    if not raw:
        return None
    return Path(raw)


def _item_value(conn: sqlite3.Connection, key: str) -> Any:
    row = conn.execute("SELECT value FROM ItemTable WHERE key = ?", (key,)).fetchone()
    if row is None or row["value"] is None:
        return None
    value = row["value"]
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


@dataclass(frozen=True)
class CursorExtractor:
    """Reads the per-workspace `state.vscdb` database Cursor keeps."""

    repo_root: Path
    home: Path
    name: str = "cursor"
    priority: int = 2

    @property
    def storage_dir(self) -> Path:
        return workspace_storage_dir(self.home)

    def is_installed(self) -> bool:
        return self.storage_dir.is_dir()

    def is_active(self) -> bool:
        return self.workspace_db() is not None

    def workspace_db(self) -> Path | None:
        if not self.storage_dir.is_dir():
            return None
        target = self.repo_root.resolve()
        for workspace in sorted(self.storage_dir.iterdir()):
            manifest = workspace / "workspace.json"
            db_path = workspace / "state.vscdb"
            if not manifest.is_file() or not db_path.is_file():
                continue
            try:
                data = json.loads(manifest.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            folder = data.get("folder") if isinstance(data, dict) else None
            if not isinstance(folder, str):
                continue
            path = folder_path(folder)
            if path is not None and path.resolve() == target:
                return db_path
        return None

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]:
        db_path = self.workspace_db()
        if db_path is None or not modified_after(db_path, since):
            return []
        try:
            conn = connect_readonly(db_path)
        except sqlite3.Error as exc:
            raise ExtractionError(self.name, f"cannot open {db_path}: {exc}") from exc
        try:
            records = self._composer_records(conn)
            if not records:
                records = self._prompt_records(conn, file_mtime(db_path))
        except sqlite3.Error as exc:
            raise ExtractionError(self.name, f"cannot read {db_path}: {exc}") from exc
        finally:
            conn.close()
        return collect_events(records, since, normalizer)

    def _composer_records(self, conn: sqlite3.Connection) -> list[RawRecord]:
        data = _item_value(conn, COMPOSER_KEY)
        composers = data.get("allComposers") if isinstance(data, dict) else None
        if not isinstance(composers, list):
            return []
        records: list[RawRecord] = []
        for composer in composers:
            if not isinstance(composer, dict):
                continue
            name = composer.get("name")
            text = name if isinstance(name, str) else ""
            records.append(
                RawRecord(
                    tool=self.name,
                    source_ids=(str(composer.get("composerId") or ""),),
                    ts=composer.get("lastUpdatedAt") or composer.get("createdAt"),
                    summary=truncate_summary(text) if text else "Cursor composer session",
                    text=text,
                )
            )
        return records

    def _prompt_records(self, conn: sqlite3.Connection, fallback_ts: dt.datetime) -> list[RawRecord]:
        # Prompt history carries no timestamps or ids; key each prompt by its text.
        prompts = _item_value(conn, PROMPTS_KEY)
        if not isinstance(prompts, list):
            return []
        records: list[RawRecord] = []
        seen: set[str] = set()
        for prompt in prompts:
            text = prompt.get("text") if isinstance(prompt, dict) else None
            if not isinstance(text, str) or not text.strip():
                continue
            digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
            if digest in seen:
                continue
            seen.add(digest)
            records.append(
                RawRecord(
                    tool=self.name,
                    source_ids=("prompt", digest),
                    ts=fallback_ts,
                    summary=truncate_summary(text),
                    text=text,
                )
            )
        if records:
            logger.debug("using cursor prompt history", extra={"prompts": len(records)})
        return records
