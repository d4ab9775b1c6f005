from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..events import Event
from ..normalize import Normalizer, RawRecord, truncate_summary
from .types import collect_events, content_text, file_mtime, modified_after, read_jsonl


def encode_project_path(repo_root: Path) -> str:
    # /Users/ray/app -> -Users-ray-app
    return re.sub(r"[^A-Za-z0-9]", "-", str(repo_root))


def _line_text(line: dict[str, Any]) -> str:
    summary = line.get("summary")
    if isinstance(summary, str) and summary:
        return summary
    message = line.get("message")
    if isinstance(message, dict):
        return content_text(message.get("content"))
    return ""


def summarize_session(lines: list[dict[str, Any]]) -> str:
    for line in lines:
        summary = line.get("summary")
        if line.get("type") == "summary" and isinstance(summary, str) and summary.strip():
            return truncate_summary(summary)
    for line in lines:
        if line.get("type") != "user":
            continue
        text = _line_text(line).strip()
        if text:
            return truncate_summary(text)
    return "Empty session"


@dataclass(frozen=True)
class ClaudeCodeExtractor:
    """Reads ~/.claude/projects/<encoded repo path>/*.jsonl session logs."""

    repo_root: Path
    home: Path
    name: str = "claude-code"
    priority: int = 1

    @property
    def claude_dir(self) -> Path:
        return self.home / ".claude"

    @property
    def projects_dir(self) -> Path:
        return self.claude_dir / "projects"

    def session_dir(self) -> Path | None:
        candidates = [
            encode_project_path(self.repo_root),
            str(self.repo_root).replace("/", "-"),
        ]
        for candidate in candidates:
            path = self.projects_dir / candidate
            if path.is_dir():
                return path
        return None

    def is_installed(self) -> bool:
        return self.claude_dir.is_dir()

    def is_active(self) -> bool:
        return self.session_dir() is not None

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]:
        session_dir = self.session_dir()
        if session_dir is None:
            return []
        records: list[RawRecord] = []
        for path in sorted(session_dir.glob("*.jsonl")):
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
        has_user = any(line.get("type") == "user" for line in lines)
        has_assistant = any(line.get("type") == "assistant" for line in lines)
        if not has_user or not has_assistant:
            return None

        session_id = path.stem
        for line in lines:
            value = line.get("sessionId")
            if isinstance(value, str) and value:
                session_id = value
                break

        # Last activity, so a resumed session re-emits with a later ts.
        ts: object = None
        for line in reversed(lines):
            if line.get("timestamp"):
                ts = line["timestamp"]
                break
        if ts is None:
            ts = file_mtime(path)

        text = "\n".join(_line_text(line) for line in lines if line.get("type") != "summary")
        return RawRecord(
            tool=self.name,
            source_ids=(session_id,),
            ts=ts,
            summary=summarize_session(lines),
            text=text,
        )
