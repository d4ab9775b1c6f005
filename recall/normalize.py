from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

from .errors import NormalizationError
from .events import (
    EVENT_TYPES,
    Event,
    EventType,
    clean_text,
    coerce_timestamp,
    format_ts,
    sort_key,
)

logger = logging.getLogger(__name__)

MAX_FILES_PER_EVENT = 10
MAX_SUMMARY_CHARS = 200

DECISION_MARKERS = ("decided to", "choosing", "went with", "architecture", "instead of")
ERROR_MARKERS = ("error", "bug", "fix")
RESOLUTION_MARKERS = ("fixed", "resolved", "working")

_FILE_PATTERNS = (
    re.compile(r"(?:Read|Edit|Write|file_path)[:\s]+[\"']?([/\w.-]+\.\w+)[\"']?", re.IGNORECASE),
    re.compile(r"```[\w]*\s*(?://|#)\s*([/\w.-]+\.\w+)", re.MULTILINE),
)


@dataclass(frozen=True)
class RawRecord:
    """A tool-specific record before normalization.

    `source_ids` are the identifiers the tool itself assigns (session id, file
    name, composer id); the canonical event id is derived from them so that
    re-extracting the same record yields the same id.
    """

    tool: str
    source_ids: tuple[str, ...]
    ts: object
    summary: object = ""
    text: str = ""
    files: object = None
    type: str | None = None


@dataclass
class NormalizationStats:
    accepted: int = 0
    dropped_missing_ts: int = 0
    dropped_missing_id: int = 0
    dropped_unreadable: int = 0
    degraded_fields: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return self.dropped_missing_ts + self.dropped_missing_id + self.dropped_unreadable


def stable_event_id(tool: str, *parts: str) -> str:
    digest = hashlib.sha256("\x1f".join((tool, *parts)).encode("utf-8")).hexdigest()
    return digest[:26]


def classify_event_type(text: str) -> EventType:
    lowered = text.lower()
    if any(marker in lowered for marker in DECISION_MARKERS):
        return "decision"
    if any(marker in lowered for marker in ERROR_MARKERS) and any(
        marker in lowered for marker in RESOLUTION_MARKERS
    ):
        return "error_resolved"
    return "session"


def truncate_summary(text: str, max_length: int = MAX_SUMMARY_CHARS) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length // 2:
        truncated = truncated[:last_space]
    return truncated + "..."


def extract_file_mentions(text: str, limit: int = MAX_FILES_PER_EVENT) -> list[str]:
    files: list[str] = []
    seen: set[str] = set()
    for pattern in _FILE_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if not candidate or " " in candidate or len(candidate) >= 200:
                continue
            if candidate in seen:
                continue
            seen.add(candidate)
            files.append(candidate)
    return files[:limit]


class Normalizer:
    def __init__(self, user: str) -> None:
        self.user = user
        self.stats = NormalizationStats()

    def normalize(self, record: RawRecord) -> Event | None:
        try:
            event = self._normalize(record)
        except NormalizationError as exc:
            self.stats.errors.append(str(exc))
            logger.warning(
                "dropping record",
                extra={"tool": record.tool, "reason": str(exc)},
            )
            return None
        self.stats.accepted += 1
        return event

    def drop_unreadable(self, tool: str, path: Path, exc: Exception) -> None:
        """Count a source file that could not be read or decoded as one dropped record."""

        self.stats.dropped_unreadable += 1
        self.stats.errors.append(f"{path}: {exc}")
        logger.warning(
            "skipping unreadable session file",
            extra={"tool": tool, "path": str(path), "reason": str(exc)},
        )

    def normalize_all(self, records: Iterable[RawRecord]) -> list[Event]:
        events = [event for event in map(self.normalize, records) if event is not None]
        events.sort(key=sort_key)
        return events

    def _normalize(self, record: RawRecord) -> Event:
        parsed_ts = coerce_timestamp(record.ts)
        if parsed_ts is None:
            self.stats.dropped_missing_ts += 1
            raise NormalizationError(f"{record.tool} record has no usable timestamp")
        ids = tuple(clean_text(part) for part in record.source_ids if isinstance(part, str) and part)
        if not ids:
            self.stats.dropped_missing_id += 1
            raise NormalizationError(f"{record.tool} record has no source identifier")

        summary = record.summary
        if not isinstance(summary, str):
            self.stats.degraded_fields += 1
            summary = ""

        event_type = record.type
        if event_type not in EVENT_TYPES:
            if event_type is not None:
                self.stats.degraded_fields += 1
            event_type = classify_event_type(record.text or summary)

        files: tuple[str, ...] = ()
        if isinstance(record.files, (list, tuple)):
            files = tuple(clean_text(item) for item in record.files if isinstance(item, str) and item)
        elif record.files is not None:
            self.stats.degraded_fields += 1
        if not files and record.text:
            files = tuple(clean_text(item) for item in extract_file_mentions(record.text))

        return Event(
            id=stable_event_id(record.tool, *ids),
            ts=format_ts(parsed_ts),
            type=cast(EventType, event_type),
            tool=record.tool,
            user=clean_text(self.user or ""),
            summary=clean_text(summary.strip()),
            files=files[:MAX_FILES_PER_EVENT],
        )
