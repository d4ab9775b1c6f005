from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from .crypto import is_encrypted
from .errors import PersistenceError, StaleBaselineError
from .snapshots import TIERS

logger = logging.getLogger(__name__)

GITATTRIBUTES = """# Recall memory tiers are regenerated on every sync; keep ours on merge.
*.md merge=ours
"""

_replace = os.replace


class MemoryDirectory:
    """The `<repo>/<memory_dir>/{small,medium,large}.md` tier files.

    `revision()` fingerprints the current tier contents. `write_all()` only
    writes when the fingerprint still matches the caller's baseline and
    replaces all three files or none of them.
    """

    def __init__(self, repo_root: Path, memory_dir: str = ".recall") -> None:
        self.repo_root = repo_root
        self.path = repo_root / memory_dir

    def tier_path(self, tier: str) -> Path:
        if tier not in TIERS:
            raise ValueError(f"unknown tier: {tier}")
        return self.path / f"{tier}.md"

    @property
    def tier_relative_paths(self) -> list[str]:
        return [str(self.tier_path(tier).relative_to(self.repo_root)) for tier in TIERS]

    @property
    def relative_paths(self) -> list[str]:
        paths = self.tier_relative_paths
        paths.append(str((self.path / ".gitattributes").relative_to(self.repo_root)))
        return paths

    def exists(self) -> bool:
        return self.path.is_dir()

    def read(self, tier: str) -> str | None:
        path = self.tier_path(tier)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"cannot read {path}: {exc}") from exc

    def read_all(self) -> dict[str, str | None]:
        return {tier: self.read(tier) for tier in TIERS}

    def revision(self) -> str:
        digest = hashlib.sha256()
        for tier in TIERS:
            path = self.tier_path(tier)
            digest.update(tier.encode("utf-8"))
            try:
                digest.update(path.read_bytes())
            except FileNotFoundError:
                digest.update(b"\x00missing")
        return digest.hexdigest()

    def is_encrypted(self) -> bool:
        return any(
            content is not None and is_encrypted(content) for content in self.read_all().values()
        )

    def ensure_gitattributes(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        path = self.path / ".gitattributes"
        if not path.exists():
            path.write_text(GITATTRIBUTES, encoding="utf-8")
        return path

    def write_all(self, contents: Mapping[str, str], *, expected_revision: str | None) -> str:
        """Replace every tier atomically and return the new revision.

        Raises StaleBaselineError when the directory changed since
        `expected_revision` was taken, PersistenceError when any write fails
        (after restoring the previous contents).
        """

        missing = [tier for tier in TIERS if tier not in contents]
        if missing:
            raise PersistenceError(f"missing tiers: {', '.join(missing)}")
        if expected_revision is not None:
            actual = self.revision()
            if actual != expected_revision:
                raise StaleBaselineError(expected_revision, actual)

        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create {self.path}: {exc}") from exc

        staged: dict[str, Path] = {}
        backups: dict[str, bytes | None] = {}
        replaced: list[str] = []
        try:
            for tier in TIERS:
                fd, tmp_name = tempfile.mkstemp(prefix=f".{tier}.", suffix=".tmp", dir=self.path)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(contents[tier])
                    handle.flush()
                    os.fsync(handle.fileno())
                staged[tier] = Path(tmp_name)
                target = self.tier_path(tier)
                backups[tier] = target.read_bytes() if target.exists() else None
            for tier in TIERS:
                _replace(staged[tier], self.tier_path(tier))
                replaced.append(tier)
        except OSError as exc:
            self._restore(replaced, backups)
            raise PersistenceError(f"failed to write memory tiers: {exc}") from exc
        finally:
            for tier, tmp_path in staged.items():
                if tier not in replaced:
                    tmp_path.unlink(missing_ok=True)
        return self.revision()

    def _restore(self, replaced: list[str], backups: Mapping[str, bytes | None]) -> None:
        for tier in replaced:
            target = self.tier_path(tier)
            previous = backups.get(tier)
            if previous is None:
                target.unlink(missing_ok=True)
            else:
                target.write_bytes(previous)
        if replaced:
            logger.warning("rolled back partial tier write", extra={"tiers": replaced})
