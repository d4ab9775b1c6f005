from __future__ import annotations

import logging
import sqlite3

import typer
from rich import print

from recall.errors import (
    EncryptionError,
    MergeConflictError,
    PersistenceError,
    RecallError,
    SyncCancelled,
)
from recall.sync import CancelToken, SyncResult

from .common import (
    build_pipeline,
    cancel_on_signals,
    err,
    load_config_and_logging,
    memory_for,
    repo_root_or_exit,
    state_for,
)

logger = logging.getLogger(__name__)


def _report(result: SyncResult, *, quiet: bool) -> None:
    if quiet:
        return
    for tool, count in sorted(result.by_tool.items()):
        print(f"  {tool}: {count}")
    for tool, error in sorted(result.failures.items()):
        print(f"  [yellow]{tool}: skipped ({error})[/yellow]")
    if result.dropped:
        print(f"  [dim]{result.dropped} unusable record(s) dropped[/dim]")
    if result.status == "unchanged":
        print("[dim]No new sessions found.[/dim]")
        return
    state = "encrypted" if result.encrypted else "plaintext"
    print(
        f"[green]✓ Saved {result.log_size} events[/green] "
        f"({result.added} new, {result.updated} updated; {state}, summaries: {result.summary_source})"
    )
    if result.attempts > 1:
        print(f"[dim]Merged concurrent changes ({result.attempts} attempts)[/dim]")


def _hint(exc: RecallError) -> str:
    if isinstance(exc, MergeConflictError):
        return "Another teammate is saving; run `recall sync` again."
    if isinstance(exc, EncryptionError):
        return "Check your team key (`recall status`) or ask an admin for access."
    return "Nothing was committed; checkpoints were not advanced."


def _run(*, auto: bool, quiet: bool, regenerate: bool, use_git: bool) -> None:
    quiet = quiet or auto
    config = load_config_and_logging()
    repo_root = repo_root_or_exit(auto=auto)
    memory = memory_for(config, repo_root)
    if not memory.exists():
        if auto:
            raise typer.Exit(code=0)
        if not quiet:
            err("[red]Error: Recall not initialized[/red]")
            err("Run [cyan]recall init[/cyan] first.")
        raise typer.Exit(code=1)

    try:
        state = state_for(config)
    except (OSError, sqlite3.Error) as exc:
        logger.error("cannot open state store", extra={"error": str(exc)})
        if auto:
            raise typer.Exit(code=0) from None
        if not quiet:
            err(f"[red]Cannot open state store {config.state_db}: {exc}[/red]")
        raise typer.Exit(code=1) from None
    try:
        with cancel_on_signals(CancelToken(), enabled=auto) as token:
            pipeline = build_pipeline(config, repo_root, state, cancel=token)
            if not quiet:
                print("[cyan]Extracting sessions...[/cyan]")
            result = pipeline.run(regenerate=regenerate, use_git=use_git)
    except SyncCancelled as exc:
        logger.info("sync cancelled", extra={"error": str(exc)})
        if not quiet:
            err(f"[yellow]{exc}; nothing was written[/yellow]")
        raise typer.Exit(code=0) from None
    except (MergeConflictError, EncryptionError, PersistenceError) as exc:
        logger.error("sync failed", extra={"error": str(exc), "kind": type(exc).__name__})
        if auto:
            raise typer.Exit(code=0) from None
        if not quiet:
            err(f"[red]{type(exc).__name__}: {exc}[/red]")
            err(f"[dim]{_hint(exc)}[/dim]")
        raise typer.Exit(code=1) from None
    except RecallError as exc:
        logger.exception("unexpected recall error")
        if auto:
            raise typer.Exit(code=0) from None
        if not quiet:
            err(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from None
    except Exception:
        # `--auto` runs from hooks and always exits 0.
        logger.exception("sync crashed")
        if auto:
            raise typer.Exit(code=0) from None
        raise
    finally:
        state.close()
    _report(result, quiet=quiet)


def save_cmd(*, auto: bool, quiet: bool) -> None:
    """Capture new sessions and rewrite the memory tiers in the working tree."""

    _run(auto=auto, quiet=quiet, regenerate=False, use_git=False)


def sync_cmd(*, regenerate: bool, quiet: bool) -> None:
    """Pull, merge, rewrite, commit and push the memory tiers."""

    _run(auto=False, quiet=quiet, regenerate=regenerate, use_git=True)
