from __future__ import annotations

import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich import print

from recall.checkpoints import StateStore
from recall.config import RecallConfig, load_config, read_config_file
from recall.extractors import default_extractors
from recall.git_info import GitRepo, detect_user, find_repo_root, project_name
from recall.keys import build_key_manager
from recall.logs import configure_logging
from recall.storage import MemoryDirectory
from recall.summarizer import build_summarizer
from recall.sync import CancelToken, SyncPipeline


def err(message: str) -> None:
    print(message, file=sys.stderr)


def load_config_and_logging() -> RecallConfig:
    config = load_config()
    configure_logging(config.log_path, config.log_level)
    return config


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        err(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def repo_root_or_exit(*, auto: bool = False, cwd: str | None = None) -> Path:
    root = find_repo_root(cwd)
    if root is None:
        if auto:
            raise typer.Exit(code=0)
        err("[red]Error: Not in a git repository[/red]")
        raise typer.Exit(code=1)
    return root


def memory_for(config: RecallConfig, repo_root: Path) -> MemoryDirectory:
    return MemoryDirectory(repo_root, config.memory_dir)


def state_for(config: RecallConfig) -> StateStore:
    return StateStore(config.state_db)


def build_pipeline(
    config: RecallConfig,
    repo_root: Path,
    state: StateStore,
    *,
    cancel: CancelToken | None = None,
) -> SyncPipeline:
    return SyncPipeline(
        config,
        repo_root,
        extractors=default_extractors(repo_root),
        state=state,
        summarizer=build_summarizer(config),
        keys=build_key_manager(config),
        memory=memory_for(config, repo_root),
        git=GitRepo(repo_root),
        user=config.user_email or detect_user(repo_root),
        project_name=project_name(repo_root),
        cancel=cancel,
    )


@contextmanager
def cancel_on_signals(token: CancelToken, *, enabled: bool = True) -> Iterator[CancelToken]:
    """Turn SIGINT/SIGTERM into a cancellation request while the block runs."""

    if not enabled:
        yield token
        return
    previous: dict[int, Any] = {}

    def _handler(signum: int, frame: object) -> None:
        token.cancel()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            # Not on the main thread (e.g. under a test runner thread).
            continue
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
