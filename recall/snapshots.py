"""Deterministic template tiers.

`small` and `medium` are rendered from the bounded window, `large` from the
full log. `large` also carries the machine-readable event log in an HTML
comment so the next sync can rebuild its merge baseline from the repository.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Sequence

from .events import Event

logger = logging.getLogger(__name__)

TIERS = ("small", "medium", "large")

SMALL_EVENTS = 20
SMALL_DECISIONS = 5
SMALL_AVOID = 3
SMALL_TOKEN_BUDGET = 500
MEDIUM_EVENTS = 100
MEDIUM_DAYS = 14
MEDIUM_TOKEN_BUDGET = 4000
LARGE_TOKEN_BUDGET = 32000

EMPTY_NOTE = "_No sessions captured yet._"

_LOG_OPEN = "<!-- recall:events"
_LOG_CLOSE = "-->"
# Only the trailing block counts; summaries rendered above it may quote the marker.
_LOG_PATTERN = re.compile(r"<!-- recall:events\n([^\n]*)\n-->\s*\Z")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def format_user(user: str) -> str:
    name = user.split("@", 1)[0] if user else "unknown"
    return f"@{name or 'unknown'}"


def group_by_day(events: Sequence[Event]) -> list[tuple[str, list[Event]]]:
    """Group events by UTC day, most recent day first; events keep log order."""

    groups: dict[str, list[Event]] = {}
    for event in events:
        groups.setdefault(event.day, []).append(event)
    return sorted(groups.items(), key=lambda item: item[0], reverse=True)


def _trim_bullets(content: str, budget: int) -> str:
    lines = content.split("\n")
    while estimate_tokens("\n".join(lines)) > budget:
        for index in range(len(lines) - 1, -1, -1):
            if lines[index].startswith("- "):
                del lines[index]
                break
        else:
            break
    return "\n".join(lines)


def render_small(events: Sequence[Event]) -> str:
    if not events:
        return f"# Team Context\n\n{EMPTY_NOTE}\n"

    recent = list(events[-SMALL_EVENTS:])
    sessions = [event for event in recent if event.type == "session"]
    decisions = [event for event in recent if event.type == "decision"]
    resolved = [event for event in recent if event.type == "error_resolved"]

    parts = [f"# Team Context\n\nLast updated: {events[-1].day}\n"]
    if sessions:
        parts.append(f"## Current Focus\n{sessions[-1].summary}\n")
    if decisions:
        lines = [
            f"- {event.summary} ({format_user(event.user)}, {event.day})"
            for event in decisions[-SMALL_DECISIONS:]
        ]
        parts.append("## Key Decisions\n" + "\n".join(lines) + "\n")
    if resolved:
        lines = [f"- {event.summary}" for event in resolved[-SMALL_AVOID:]]
        parts.append("## Avoid These\n" + "\n".join(lines) + "\n")
    return _trim_bullets("\n".join(parts), SMALL_TOKEN_BUDGET)


def _medium_line(event: Event) -> str:
    files = f" ({', '.join(event.files)})" if event.files else ""
    tag = {"decision": " [decision]", "error_resolved": " [fix]"}.get(event.type, "")
    return f"- {format_user(event.user)} ({event.tool}): {event.summary}{files}{tag}"


def render_medium(events: Sequence[Event]) -> str:
    if not events:
        return f"# Session History\n\n{EMPTY_NOTE}\n"

    content = "# Session History\n\n"
    for day, day_events in group_by_day(events[-MEDIUM_EVENTS:])[:MEDIUM_DAYS]:
        content += f"## {day}\n\n"
        content += "\n".join(_medium_line(event) for event in day_events) + "\n\n"
        if estimate_tokens(content) > MEDIUM_TOKEN_BUDGET:
            break
    return content


def render_large(events: Sequence[Event]) -> str:
    if not events:
        return f"# Full History\n\n{EMPTY_NOTE}\n"

    content = (
        "# Full History\n\n"
        f"Total events: {len(events)}\n"
        f"Date range: {events[0].day} to {events[-1].day}\n\n"
    )
    shown = 0
    for day, day_events in group_by_day(events):
        content += f"## {day}\n\n"
        for event in day_events:
            clock = event.ts.split("T", 1)[1][:5]
            content += f"### {clock} - {format_user(event.user)} ({event.tool})\n\n"
            content += f"**Type:** {event.type}\n\n"
            if event.summary:
                content += f"{event.summary}\n\n"
            if event.files:
                content += f"**Files:** {', '.join(event.files)}\n\n"
            content += "---\n\n"
        shown += len(day_events)
        if estimate_tokens(content) > LARGE_TOKEN_BUDGET:
            if shown < len(events):
                content += f"_History truncated. {len(events) - shown} older events not shown._\n"
            break
    return content


def embed_event_log(markdown: str, events: Sequence[Event]) -> str:
    payload = json.dumps([event.to_dict() for event in events], ensure_ascii=False)
    # `>` only occurs inside JSON strings; escaping it keeps "-->" out of the comment.
    payload = payload.replace(">", "\\u003e")
    return f"{markdown.rstrip()}\n\n{_LOG_OPEN}\n{payload}\n{_LOG_CLOSE}\n"


def strip_event_log(markdown: str) -> str:
    return _LOG_PATTERN.sub("", markdown).rstrip() + "\n"


def extract_event_log(markdown: str) -> list[Event] | None:
    """Return the embedded event log, or None when the document has none."""

    match = _LOG_PATTERN.search(markdown)
    if match is None:
        return None
    try:
        raw = json.loads(match.group(1))
    except json.JSONDecodeError:
        logger.warning("embedded event log is not valid json")
        return None
    if not isinstance(raw, list):
        return None
    events: list[Event] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            events.append(Event.from_dict(item))
        except ValueError as exc:
            logger.warning("skipping invalid logged event", extra={"reason": str(exc)})
    return events


def render_template_tiers(window: Sequence[Event], log: Sequence[Event]) -> dict[str, str]:
    return {
        "small": render_small(window),
        "medium": render_medium(window),
        "large": embed_event_log(render_large(log), log),
    }
