"""Extractor registry.

The registry is an explicit, priority-ordered tuple of independent extractor
variants. Selection is a pure function over that tuple; predicates and
extraction run concurrently, one task per extractor, and a failing extractor
contributes zero events instead of aborting the others.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ExtractionError
from ..events import Event
from ..normalize import NormalizationStats, Normalizer
from .claude_code import ClaudeCodeExtractor
from .codex import CodexExtractor
from .cursor import CursorExtractor
from .gemini import GeminiExtractor
from .types import Extractor

logger = logging.getLogger(__name__)

__all__ = [
    "ClaudeCodeExtractor",
    "CodexExtractor",
    "CursorExtractor",
    "ExtractionReport",
    "Extractor",
    "GeminiExtractor",
    "default_extractors",
    "extract_all_events",
    "get_active_extractors",
    "get_installed_extractors",
    "select_extractors",
]

EXTRACTOR_TYPES = (ClaudeCodeExtractor, CursorExtractor, CodexExtractor, GeminiExtractor)


@dataclass
class ExtractionReport:
    events: list[Event] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    stats: dict[str, NormalizationStats] = field(default_factory=dict)

    @property
    def dropped(self) -> int:
        return sum(item.dropped for item in self.stats.values())


def default_extractors(repo_root: Path, home: Path | None = None) -> tuple[Extractor, ...]:
    home = home or Path.home()
    extractors = [cls(repo_root=repo_root, home=home) for cls in EXTRACTOR_TYPES]
    return tuple(sorted(extractors, key=lambda item: item.priority))


def select_extractors(
    extractors: Iterable[Extractor],
    matches: Mapping[str, bool] | None = None,
) -> list[Extractor]:
    """Order by priority; the first extractor registered for a tool wins."""

    selected: list[Extractor] = []
    seen: set[str] = set()
    for extractor in sorted(extractors, key=lambda item: item.priority):
        if extractor.name in seen:
            continue
        if matches is not None and not matches.get(extractor.name, False):
            continue
        seen.add(extractor.name)
        selected.append(extractor)
    return selected


def _probe(
    extractors: Sequence[Extractor],
    predicate: Callable[[Extractor], bool],
) -> dict[str, bool]:
    results: dict[str, bool] = {}
    if not extractors:
        return results
    with ThreadPoolExecutor(max_workers=len(extractors)) as pool:
        futures = {pool.submit(predicate, extractor): extractor for extractor in extractors}
        for future in as_completed(futures):
            extractor = futures[future]
            try:
                ok = bool(future.result())
            except Exception:
                logger.exception("extractor probe failed", extra={"tool": extractor.name})
                ok = False
            results[extractor.name] = results.get(extractor.name, False) or ok
    return results


def get_installed_extractors(extractors: Sequence[Extractor]) -> list[Extractor]:
    candidates = select_extractors(extractors)
    return select_extractors(candidates, _probe(candidates, lambda item: item.is_installed()))


def get_active_extractors(extractors: Sequence[Extractor]) -> list[Extractor]:
    installed = get_installed_extractors(extractors)
    return select_extractors(installed, _probe(installed, lambda item: item.is_active()))


def _run_one(
    extractor: Extractor,
    since: dt.datetime | None,
    user: str,
) -> tuple[list[Event], NormalizationStats]:
    normalizer = Normalizer(user)
    try:
        events = extractor.extract_events(since, normalizer)
    except ExtractionError:
        raise
    except Exception as exc:
        raise ExtractionError(extractor.name, str(exc) or type(exc).__name__) from exc
    return events, normalizer.stats


def extract_all_events(
    extractors: Sequence[Extractor],
    since: dt.datetime | None = None,
    *,
    user: str = "",
    checkpoints: Mapping[str, dt.datetime] | None = None,
) -> ExtractionReport:
    """Extract from every active extractor and return one ordered stream.

    A per-tool checkpoint, when present, takes precedence over `since`.
    Events are ordered by timestamp, then extractor priority, then id.
    """

    report = ExtractionReport()
    active = get_active_extractors(extractors)
    if not active:
        return report
    priorities = {extractor.name: extractor.priority for extractor in active}
    with ThreadPoolExecutor(max_workers=len(active)) as pool:
        futures = {
            pool.submit(
                _run_one,
                extractor,
                (checkpoints or {}).get(extractor.name, since),
                user,
            ): extractor
            for extractor in active
        }
        for future in as_completed(futures):
            extractor = futures[future]
            try:
                events, stats = future.result()
            except ExtractionError as exc:
                logger.warning(
                    "extractor failed",
                    extra={"tool": extractor.name, "error": str(exc)},
                )
                report.failures[extractor.name] = str(exc)
                report.counts[extractor.name] = 0
                continue
            report.events.extend(events)
            report.counts[extractor.name] = len(events)
            report.stats[extractor.name] = stats
            if stats.dropped:
                logger.info(
                    "dropped unusable records",
                    extra={"tool": extractor.name, "dropped": stats.dropped},
                )
    report.events.sort(
        key=lambda event: (event.timestamp, priorities.get(event.tool, 99), event.id)
    )
    return report
