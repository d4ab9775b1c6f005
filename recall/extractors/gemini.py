from __future__ import annotations

import datetime as dt
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..events import Event
from ..normalize import Normalizer, RawRecord, truncate_summary
from .types import collect_events, content_text, file_mtime, modified_after


def project_hash(repo_root: Path) -> str:
    return hashlib.sha256(str(repo_root).encode("utf-8")).hexdigest()


def _messages(data: dict[str, Any]) -> list[dict[str, Any]]:
    raw = data.get("messages") or data.get("conversation") or []
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    parts = message.get("parts")
    if isinstance(parts, list):
        return content_text([{"type": "text", **p} for p in parts if isinstance(p, dict)])
    return content_text(content)


def _is_user(message: dict[str, Any]) -> bool:
    return message.get("role") == "user" or message.get("type") == "user"


@dataclass(frozen=True)
class GeminiExtractor:
    """Reads ~/.gemini/tmp/<sha256(project root)>/chats/*.json."""

    repo_root: Path
    home: Path
    name: str = "gemini"
    priority: int = 4

    @property
    def gemini_dir(self) -> Path:
        return self.home / ".gemini"

    @property
    def chats_dir(self) -> Path:
        return self.gemini_dir / "tmp" / project_hash(self.repo_root) / "chats"

    def is_installed(self) -> bool:
        return self.gemini_dir.is_dir()

    def is_active(self) -> bool:
        return self.chats_dir.is_dir()

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]:
        if not self.chats_dir.is_dir():
            return []
        records: list[RawRecord] = []
        for path in sorted(self.chats_dir.glob("*.json")):
            if not modified_after(path, since):
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                normalizer.drop_unreadable(self.name, path, exc)
                continue
            if not isinstance(data, dict):
                continue
            records.append(self._chat_record(path, data))
        return collect_events(records, since, normalizer)

    def _chat_record(self, path: Path, data: dict[str, Any]) -> RawRecord:
        messages = _messages(data)
        summary = ""
        for message in messages:
            if _is_user(message):
                summary = _message_text(message).strip()
                if summary:
                    break
        session_id = data.get("sessionId")
        ts = data.get("lastUpdated") or data.get("startTime") or file_mtime(path)
        return RawRecord(
            tool=self.name,
            source_ids=(session_id if isinstance(session_id, str) and session_id else path.stem,),
            ts=ts,
            summary=truncate_summary(summary) if summary else "Gemini session",
            text="\n".join(_message_text(message) for message in messages),
        )
