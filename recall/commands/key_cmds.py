from __future__ import annotations

import typer
from rich import print

from recall.config import write_config_file
from recall.errors import EncryptionError, MergeConflictError, PersistenceError

from .common import (
    build_pipeline,
    err,
    load_config_and_logging,
    read_config_or_exit,
    repo_root_or_exit,
    state_for,
)


def rotate_key_cmd(*, push: bool) -> None:
    """Rotate the team key and re-encrypt every tier under the new version."""

    config = load_config_and_logging()
    repo_root = repo_root_or_exit()
    state = state_for(config)
    try:
        pipeline = build_pipeline(config, repo_root, state)
        if pipeline.keys is None:
            err("[red]No team key configured; nothing to rotate.[/red]")
            raise typer.Exit(code=1)
        key = pipeline.keys.rotate()
        rewritten = pipeline.reencrypt(use_git=push)
    except (EncryptionError, MergeConflictError, PersistenceError) as exc:
        err(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        state.close()

    if config.team_key:
        data = read_config_or_exit()
        data["team_key"] = key.to_b64()
        data["team_key_version"] = key.version
        try:
            write_config_file(data)
        except OSError as exc:
            err(f"[red]Failed to write config: {exc}[/red]")
            err(f"New team key (v{key.version}): {key.to_b64()}")
            raise typer.Exit(code=1) from exc
        print("[dim]Updated team_key in config; share it with your team.[/dim]")
    print(f"[green]✓ Rotated team key to v{key.version}[/green]")
    if rewritten:
        print(f"[green]✓ Re-encrypted {rewritten} tier(s)[/green]")
    else:
        print("[dim]No tiers to re-encrypt yet.[/dim]")
