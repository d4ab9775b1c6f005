from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..events import Event
from ..normalize import Normalizer, RawRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class Extractor(Protocol):
    """Capability set every tool variant provides.

    Variants are independent classes registered in `recall.extractors`; none
    of them inherits from another.
    """

    name: str
    priority: int

    def is_installed(self) -> bool: ...

    def is_active(self) -> bool: ...

    def extract_events(self, since: dt.datetime | None, normalizer: Normalizer) -> list[Event]: ...


def collect_events(
    records: Iterable[RawRecord],
    since: dt.datetime | None,
    normalizer: Normalizer,
) -> list[Event]:
    events = normalizer.normalize_all(records)
    if since is None:
        return events
    return [event for event in events if event.timestamp > since]


def file_mtime(path: Path) -> dt.datetime:
    return dt.datetime.fromtimestamp(path.stat().st_mtime, tz=dt.UTC)


def modified_after(path: Path, since: dt.datetime | None) -> bool:
    return since is None or file_mtime(path) > since


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from a line-delimited log, skipping corrupt lines."""

    skipped = 0
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if isinstance(payload, dict):
                yield payload
    if skipped:
        logger.debug("skipped corrupt jsonl lines", extra={"path": str(path), "skipped": skipped})


def content_text(content: object) -> str:
    """Flatten string-or-blocks message content into plain text."""

    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") not in {"text", "input_text", "output_text"}:
            continue
        text = block.get("text")
        if isinstance(text, str) and text:
            parts.append(text)
    return "\n".join(parts)


def is_within(path: str | Path, root: Path) -> bool:
    try:
        Path(path).expanduser().resolve().relative_to(root.resolve())
    except (ValueError, OSError):
        return False
    return True
