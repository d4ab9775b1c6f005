from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..events import Event
from ..normalize import Normalizer, RawRecord, truncate_summary
from .types import collect_events, content_text, file_mtime, is_within, modified_after, read_jsonl

_YEAR = re.compile(r"^\d{4}$")
_TWO_DIGITS = re.compile(r"^\d{2}$")
_INJECTED_PREFIXES = ("<environment_context>", "<user_instructions>", "# AGENTS.md")


def _item_payload(line: dict[str, Any]) -> dict[str, Any]:
    payload = line.get("payload")
    if isinstance(payload, dict):
        return payload
    return line


def first_user_message(lines: list[dict[str, Any]]) -> str:
    for line in lines:
        item = _item_payload(line)
        if item.get("type") != "message" or item.get("role") != "user":
            continue
        text = content_text(item.get("content")).strip()
        if text and not text.startswith(_INJECTED_PREFIXES):
            return text
    first = lines[0] if lines else {}
    content = first.get("content")
    if isinstance(content, str) and content.strip():
        return content
    return ""


@dataclass(frozen=True)
class CodexExtractor:
    """Reads ~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl."""

    repo_root: Path
    home: Path
    name: str = "codex"
    priority: int = 3

    @property
    def codex_dir(self) -> Path:
        return self.home / ".codex"

    @property
    def sessions_dir(self) -> Path:
        return self.codex_dir / "sessions"

    def is_installed(self) -> bool:
        return self.codex_dir.is_dir()

    def is_active(self) -> bool:
        return self.sessions_dir.is_dir()

    def rollout_files(self) -> list[Path]:
        files: list[Path] = []
        if not self.sessions_dir.is_dir():
            return files
        for year in sorted(self.sessions_dir.iterdir()):
            if not (year.is_dir() and _YEAR.match(year.name)):
                continue
            for month in sorted(year.iterdir()):
                if not (month.is_dir() and _TWO_DIGITS.match(month.name)):
                    continue
                for day in sorted(month.iterdir()):
                    if not (day.is_dir() and _TWO_DIGITS.match(day.name)):
                        continue
                    files.extend(sorted(day.glob("rollout-*.jsonl")))
        return files

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]:
        records: list[RawRecord] = []
        for path in self.rollout_files():
            if not modified_after(path, since):
                continue
            try:
                record = self._session_record(path)
            except OSError as exc:
                normalizer.drop_unreadable(self.name, path, exc)
                continue
            if record is not None:
                records.append(record)
        return collect_events(records, since, normalizer)

    def _session_record(self, path: Path) -> RawRecord | None:
        lines = list(read_jsonl(path))
        if len(lines) < 2:
            return None

        session_id = path.stem
        cwd: str | None = None
        for line in lines:
            if line.get("type") != "session_meta":
                continue
            meta = _item_payload(line)
            if isinstance(meta.get("id"), str) and meta["id"]:
                session_id = meta["id"]
            if isinstance(meta.get("cwd"), str):
                cwd = meta["cwd"]
            break
        if cwd and not is_within(cwd, self.repo_root):
            return None

        ts: object = None
        for line in reversed(lines):
            if line.get("timestamp"):
                ts = line["timestamp"]
                break
        if ts is None:
            ts = file_mtime(path)

        summary = first_user_message(lines)
        text = "\n".join(
            content_text(_item_payload(line).get("content"))
            for line in lines
            if _item_payload(line).get("type") == "message"
        )
        return RawRecord(
            tool=self.name,
            source_ids=(session_id,),
            ts=ts,
            summary=truncate_summary(summary) if summary else "Codex session",
            text=text,
        )
