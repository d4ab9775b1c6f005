from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .events import Event, sort_key

DEFAULT_WINDOW_SIZE = 100


@dataclass(frozen=True)
class MergeResult:
    log: list[Event]
    window: list[Event]
    added: int = 0
    updated: int = 0
    checkpoints: dict[str, dt.datetime] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated)


def _prefer(current: Event, candidate: Event) -> bool:
    """True when `candidate` should replace `current` for the same key."""

    return candidate.timestamp >= current.timestamp


def dedupe(events: Iterable[Event]) -> dict[tuple[str, str], Event]:
    merged: dict[tuple[str, str], Event] = {}
    for event in events:
        current = merged.get(event.key)
        if current is None or _prefer(current, event):
            merged[event.key] = event
    return merged


def merge_events(baseline: Iterable[Event], incoming: Iterable[Event]) -> list[Event]:
    """Union by (tool, id), keeping the later `ts`; ties keep the incoming event.

    Merging the same incoming events twice yields the same log.
    """

    merged = dedupe(baseline)
    for event in incoming:
        current = merged.get(event.key)
        if current is None or _prefer(current, event):
            merged[event.key] = event
    return sorted(merged.values(), key=sort_key)


def window(events: list[Event], size: int = DEFAULT_WINDOW_SIZE) -> list[Event]:
    if size <= 0:
        return []
    return events[-size:]


def advance_checkpoints(
    previous: Mapping[str, dt.datetime],
    events: Iterable[Event],
) -> dict[str, dt.datetime]:
    checkpoints = dict(previous)
    for event in events:
        current = checkpoints.get(event.tool)
        if current is None or event.timestamp > current:
            checkpoints[event.tool] = event.timestamp
    return checkpoints


def merge(
    baseline: Iterable[Event],
    incoming: Iterable[Event],
    *,
    window_size: int = DEFAULT_WINDOW_SIZE,
    checkpoints: Mapping[str, dt.datetime] | None = None,
) -> MergeResult:
    base = dedupe(baseline)
    new_events = list(incoming)
    added = 0
    updated = 0
    for event in dedupe(new_events).values():
        current = base.get(event.key)
        if current is None:
            added += 1
        elif current != event and _prefer(current, event):
            updated += 1
    log = merge_events(base.values(), new_events)
    return MergeResult(
        log=log,
        window=window(log, window_size),
        added=added,
        updated=updated,
        checkpoints=advance_checkpoints(checkpoints or {}, new_events),
    )
