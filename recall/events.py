from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict, cast

EventType = Literal["session", "decision", "error_resolved"]
EVENT_TYPES: tuple[EventType, ...] = ("session", "decision", "error_resolved")


class EventPayload(TypedDict, total=False):
    id: str
    ts: str
    type: str
    tool: str
    user: str
    summary: str
    files: list[str]


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def coerce_timestamp(value: object) -> dt.datetime | None:
    """Accept ISO-8601 strings, epoch seconds/milliseconds, or datetimes."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.UTC)
        return value.astimezone(dt.UTC)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return dt.datetime.fromtimestamp(seconds, tz=dt.UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return coerce_timestamp(int(stripped))
        return parse_iso8601(stripped)
    return None


def format_ts(value: dt.datetime) -> str:
    """Canonical wire form: UTC, millisecond precision, `Z` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ts() -> str:
    return format_ts(dt.datetime.now(dt.UTC))


def clean_text(value: str) -> str:
    """Replace lone surrogates so the text always encodes as UTF-8."""

    return value.encode("utf-8", "replace").decode("utf-8")


@dataclass(frozen=True, slots=True)
class Event:
    id: str
    ts: str
    type: EventType
    tool: str
    user: str
    summary: str = ""
    files: tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> tuple[str, str]:
        return (self.tool, self.id)

    @property
    def timestamp(self) -> dt.datetime:
        parsed = parse_iso8601(self.ts)
        if parsed is None:
            raise ValueError(f"invalid event timestamp: {self.ts!r}")
        return parsed

    @property
    def day(self) -> str:
        return self.ts.split("T", 1)[0]

    def to_dict(self) -> EventPayload:
        payload: EventPayload = {
            "id": self.id,
            "ts": self.ts,
            "type": self.type,
            "tool": self.tool,
            "user": self.user,
            "summary": self.summary,
        }
        if self.files:
            payload["files"] = list(self.files)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        event_id = data.get("id")
        tool = data.get("tool")
        if not isinstance(event_id, str) or not event_id:
            raise ValueError("event id is required")
        if not isinstance(tool, str) or not tool:
            raise ValueError("event tool is required")
        parsed = coerce_timestamp(data.get("ts"))
        if parsed is None:
            raise ValueError(f"event {tool}/{event_id} has no valid ts")
        event_type = data.get("type")
        if event_type not in EVENT_TYPES:
            event_type = "session"
        raw_files = data.get("files")
        files = (
            tuple(clean_text(item) for item in raw_files if isinstance(item, str) and item)
            if isinstance(raw_files, list)
            else ()
        )
        return cls(
            id=clean_text(event_id),
            ts=format_ts(parsed),
            type=cast(EventType, event_type),
            tool=clean_text(tool),
            user=clean_text(str(data.get("user") or "")),
            summary=clean_text(str(data.get("summary") or "")),
            files=files,
        )


def sort_key(event: Event) -> tuple[dt.datetime, str, str]:
    return (event.timestamp, event.tool, event.id)
