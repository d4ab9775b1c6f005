from __future__ import annotations

import getpass
import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import PersistenceError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_S = 60

_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "failed to push some refs")


def run_command(cmd: Sequence[str], cwd: str | None = None) -> str:
    try:
        out = subprocess.check_output(
            cmd, cwd=cwd, stderr=subprocess.STDOUT, text=True, timeout=GIT_TIMEOUT_S
        )
        return out.strip()
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return ""


def find_repo_root(cwd: str | Path | None = None) -> Path | None:
    root = run_command(["git", "rev-parse", "--show-toplevel"], cwd=str(cwd) if cwd else None)
    return Path(root) if root else None


def detect_user(cwd: str | Path | None = None) -> str:
    email = run_command(["git", "config", "user.email"], cwd=str(cwd) if cwd else None)
    if email:
        return email
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def project_name(repo_root: Path) -> str:
    remote = run_command(["git", "remote", "get-url", "origin"], cwd=str(repo_root))
    match = re.search(r"[/:]([^/:]+?)(?:\.git)?/?$", remote) if remote else None
    if match:
        return match.group(1)
    return repo_root.name


class PushRejected(PersistenceError):
    """The remote advanced; pull and retry."""


@dataclass
class GitResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRepo:
    """The handful of git operations the sync pipeline needs, scoped to given paths."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def run(self, *args: str) -> GitResult:
        try:
            proc = subprocess.run(
                ["git", *args],
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_S,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PersistenceError("git is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise PersistenceError(f"git {args[0]} timed out") from exc
        return GitResult(proc.returncode, (proc.stdout + proc.stderr).strip())

    def has_upstream(self) -> bool:
        return self.run("rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}").ok

    def ensure_merge_driver(self) -> None:
        # `.gitattributes` asks for `merge=ours`; git only honours it once a driver is set.
        if self.run("config", "--get", "merge.ours.driver").ok:
            return
        result = self.run("config", "merge.ours.driver", "true")
        if not result.ok:
            raise PersistenceError(f"git config failed: {result.output}")

    def discard(self, paths: Sequence[str]) -> None:
        """Reset `paths` in the index and working tree to HEAD, deleting the ones HEAD lacks."""

        for path in paths:
            if self.run("cat-file", "-e", f"HEAD:{path}").ok:
                result = self.run("checkout", "HEAD", "--", path)
                if not result.ok:
                    raise PersistenceError(f"git checkout failed: {result.output}")
            else:
                self.run("rm", "--cached", "--quiet", "--ignore-unmatch", "--", path)
                (self.root / path).unlink(missing_ok=True)

    def pull(self, discard: Sequence[str] = ()) -> bool:
        """Rebase onto the upstream, first resetting `discard` to HEAD.

        Returns False when the branch has no upstream; nothing is touched then.
        """

        if not self.has_upstream():
            return False
        self.ensure_merge_driver()
        if discard:
            self.discard(discard)
        result = self.run("pull", "--rebase", "--autostash", "--quiet")
        if not result.ok:
            self.run("rebase", "--abort")
            raise PersistenceError(f"git pull failed: {result.output}")
        return True

    def commit(self, paths: Sequence[str], message: str) -> bool:
        """Commit only `paths`; returns False when they have no changes."""

        existing = [path for path in paths if (self.root / path).exists()]
        if not existing:
            return False
        added = self.run("add", "--", *existing)
        if not added.ok:
            raise PersistenceError(f"git add failed: {added.output}")
        if self.run("diff", "--cached", "--quiet", "--", *existing).ok:
            return False
        result = self.run("commit", "--quiet", "--no-verify", "-m", message, "--", *existing)
        if not result.ok:
            raise PersistenceError(f"git commit failed: {result.output}")
        return True

    def push(self) -> None:
        if not self.has_upstream():
            return
        result = self.run("push", "--quiet")
        if result.ok:
            return
        lowered = result.output.lower()
        if any(marker in lowered for marker in _REJECTED_MARKERS):
            raise PushRejected(f"git push rejected: {result.output}")
        raise PersistenceError(f"git push failed: {result.output}")

    def undo_commit(self, paths: Sequence[str]) -> None:
        """Drop the last (local, unpushed) commit and reset `paths` to the new HEAD."""

        result = self.run("reset", "--soft", "HEAD~1")
        if not result.ok:
            raise PersistenceError(f"git reset failed: {result.output}")
        self.discard(paths)
        logger.info("undid unpushed memory commit", extra={"paths": list(paths)})
