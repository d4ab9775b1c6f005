"""Save/sync pipeline.

extract -> merge against the current baseline -> summarize -> encrypt ->
write all tiers -> (git commit -> push). The baseline is re-read on every
attempt; a write against a stale baseline or a rejected push restarts the
attempt with the newer state merged in. Checkpoints advance only after the
tiers are written (and committed, when git is in play).
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .checkpoints import StateStore
from .config import RecallConfig
from .crypto import is_encrypted
from .errors import EncryptionError, MergeConflictError, StaleBaselineError, SyncCancelled
from .events import Event
from .extractors import ExtractionReport, Extractor, extract_all_events
from .git_info import GitRepo, PushRejected
from .keys import KeyManager
from .merge import MergeResult, merge, merge_events
from .snapshots import TIERS, embed_event_log, extract_event_log, render_large
from .storage import MemoryDirectory
from .summarizer import SummarizationClient

logger = logging.getLogger(__name__)


class CancelToken:
    """Set from a signal handler or another thread; checked between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str) -> None:
        if self._event.is_set():
            raise SyncCancelled(f"sync cancelled before {stage}")


@dataclass
class SyncResult:
    status: str
    added: int = 0
    updated: int = 0
    log_size: int = 0
    window_size: int = 0
    attempts: int = 0
    summary_source: str = "template"
    encrypted: bool = False
    committed: bool = False
    by_tool: dict[str, int] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    dropped: int = 0


class SyncPipeline:
    def __init__(
        self,
        config: RecallConfig,
        repo_root: Path,
        *,
        extractors: Sequence[Extractor],
        state: StateStore,
        summarizer: SummarizationClient,
        keys: KeyManager | None,
        memory: MemoryDirectory | None = None,
        git: GitRepo | None = None,
        user: str = "",
        project_name: str = "",
        cancel: CancelToken | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.extractors = extractors
        self.state = state
        self.summarizer = summarizer
        self.keys = keys
        self.memory = memory or MemoryDirectory(repo_root, config.memory_dir)
        self.git = git
        self.user = user
        self.project_name = project_name or repo_root.name
        self.cancel = cancel or CancelToken()
        self.attempts = 0

    # Baseline

    def read_tier(self, tier: str) -> str | None:
        content = self.memory.read(tier)
        if content is None or not is_encrypted(content):
            return content
        if self.keys is None:
            raise EncryptionError("memory is encrypted but no team key is configured")
        return self.keys.decrypt(content)

    def read_logged(self) -> list[Event] | None:
        """The event log embedded in `large.md`; None when it is missing or unreadable."""

        large = self.read_tier("large")
        if large is None:
            return None
        logged = extract_event_log(large)
        if logged is None:
            logger.warning("large tier has no event log; using local shadow store")
        return logged

    def load_baseline(self) -> list[Event]:
        return merge_events(self.state.load_events(self.repo_root), self.read_logged() or [])

    # Stages

    def extract(self, *, full: bool = False) -> ExtractionReport:
        self.cancel.check("extraction")
        checkpoints = None if full else self.state.get_checkpoints(self.repo_root)
        return extract_all_events(self.extractors, user=self.user, checkpoints=checkpoints)

    def render(self, merged: MergeResult) -> tuple[dict[str, str], str]:
        summary = self.summarizer.summarize(merged.window, self.project_name)
        tiers = {
            "small": summary.small,
            "medium": summary.medium,
            "large": embed_event_log(render_large(merged.log), merged.log),
        }
        return tiers, summary.source

    def seal(self, tiers: dict[str, str]) -> tuple[dict[str, str], bool]:
        if self.keys is not None:
            return {tier: self.keys.encrypt(tiers[tier]) for tier in TIERS}, True
        if self.config.encryption_configured or self.memory.is_encrypted():
            raise EncryptionError("refusing to write plaintext memory: team key unavailable")
        return tiers, False

    def _needs_write(
        self, merged: MergeResult, logged: list[Event] | None, regenerate: bool
    ) -> bool:
        if regenerate or merged.changed:
            return True
        # The shadow store can hold events the embedded log lacks.
        if logged is None or merge_events([], logged) != merged.log:
            return True
        if any(content is None for content in self.memory.read_all().values()):
            return True
        return self.keys is not None and self.keys.ring.needs_reencrypt

    # Entry points

    def run(self, *, regenerate: bool = False, use_git: bool = False) -> SyncResult:
        report = self.extract(full=regenerate)
        if report.failures:
            logger.warning("some extractors failed", extra={"failures": report.failures})

        attempt_id = self.state.start_sync_attempt(self.repo_root)
        self.attempts = 0
        try:
            result = self._attempt_loop(report, regenerate=regenerate, use_git=use_git)
        except Exception as exc:
            self.state.finish_sync_attempt(
                attempt_id, ok=False, attempts=self.attempts, error=f"{type(exc).__name__}: {exc}"
            )
            raise
        self.state.finish_sync_attempt(
            attempt_id, ok=True, attempts=result.attempts, events=result.log_size
        )
        result.by_tool = dict(report.counts)
        result.failures = dict(report.failures)
        result.dropped = report.dropped
        return result

    def _attempt_loop(
        self,
        report: ExtractionReport,
        *,
        regenerate: bool,
        use_git: bool,
    ) -> SyncResult:
        git = self.git if use_git else None
        max_attempts = max(1, self.config.sync_max_attempts)
        previous = self.state.get_checkpoints(self.repo_root)
        for attempt in range(1, max_attempts + 1):
            self.attempts = attempt
            self.cancel.check("merge")
            if git is not None:
                # Working-tree tiers are mirrored in the shadow store; rebuild them after the pull.
                git.pull(discard=self.memory.tier_relative_paths)
            revision = self.memory.revision()
            logged = self.read_logged()
            merged = merge(
                merge_events(self.state.load_events(self.repo_root), logged or []),
                report.events,
                window_size=self.config.window_size,
                checkpoints=previous,
            )
            if not self._needs_write(merged, logged, regenerate):
                self.state.set_checkpoints(self.repo_root, merged.checkpoints)
                return SyncResult(
                    status="unchanged",
                    log_size=len(merged.log),
                    window_size=len(merged.window),
                    attempts=attempt,
                    encrypted=self.memory.is_encrypted(),
                )

            self.cancel.check("summarization")
            tiers, source = self.render(merged)
            self.cancel.check("encryption")
            sealed, encrypted = self.seal(tiers)
            self.cancel.check("write")

            # Past this point the sync runs to completion or fails; it is not cancelled.
            try:
                self.memory.write_all(sealed, expected_revision=revision)
            except StaleBaselineError as exc:
                logger.info("memory changed during sync; retrying", extra={"attempt": attempt, "error": str(exc)})
                continue

            committed = False
            if git is not None:
                self.memory.ensure_gitattributes()
                paths = self.memory.relative_paths
                committed = git.commit(paths, self._commit_message(merged))
                if committed and self.config.git_push:
                    try:
                        git.push()
                    except PushRejected as exc:
                        logger.info("push rejected; retrying", extra={"attempt": attempt, "error": str(exc)})
                        git.undo_commit(paths)
                        continue

            self.state.replace_events(self.repo_root, merged.log)
            self.state.set_checkpoints(self.repo_root, merged.checkpoints)
            if self.keys is not None and self.keys.ring.needs_reencrypt:
                self.keys.ring.retire()
            return SyncResult(
                status="saved",
                added=merged.added,
                updated=merged.updated,
                log_size=len(merged.log),
                window_size=len(merged.window),
                attempts=attempt,
                summary_source=source,
                encrypted=encrypted,
                committed=committed,
            )
        raise MergeConflictError(
            f"memory changed concurrently {max_attempts} times; re-run `recall sync`"
        )

    def reencrypt(self, *, use_git: bool = False) -> int:
        """Rewrite every tier under the current key version; returns tiers rewritten."""

        if self.keys is None:
            raise EncryptionError("no team key configured")
        git = self.git if use_git else None
        for _attempt in range(max(1, self.config.sync_max_attempts)):
            self.cancel.check("re-encryption")
            if git is not None:
                # Unsynced local events stay in the shadow store; the next sync writes them.
                git.pull(discard=self.memory.tier_relative_paths)
            revision = self.memory.revision()
            plain = {tier: self.read_tier(tier) for tier in TIERS}
            present = {tier: text for tier, text in plain.items() if text is not None}
            if len(present) != len(TIERS):
                return 0
            sealed = {tier: self.keys.encrypt(text) for tier, text in present.items()}
            try:
                self.memory.write_all(sealed, expected_revision=revision)
            except StaleBaselineError:
                continue
            if git is not None:
                self.memory.ensure_gitattributes()
                paths = self.memory.relative_paths
                if git.commit(paths, "recall: re-encrypt team memory") and self.config.git_push:
                    try:
                        git.push()
                    except PushRejected:
                        git.undo_commit(paths)
                        continue
            self.keys.ring.retire()
            return len(sealed)
        raise MergeConflictError("memory changed concurrently during re-encryption")

    def _commit_message(self, merged: MergeResult) -> str:
        stamp = dt.datetime.now(dt.UTC).strftime("%Y-%m-%d %H:%M")
        return f"recall: update team memory ({len(merged.log)} events, {stamp} UTC)"
