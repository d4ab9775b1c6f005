from __future__ import annotations

import json
from collections import Counter

import typer
from rich import print

from recall.crypto import is_encrypted
from recall.errors import EncryptionError, PersistenceError
from recall.extractors import default_extractors, get_active_extractors, get_installed_extractors
from recall.git_info import GitRepo
from recall.keys import build_key_manager
from recall.snapshots import TIERS, estimate_tokens, extract_event_log, render_template_tiers, strip_event_log

from .common import err, load_config_and_logging, memory_for, repo_root_or_exit, state_for


def init_cmd() -> None:
    """Create the memory directory with placeholder tiers."""

    config = load_config_and_logging()
    repo_root = repo_root_or_exit()
    memory = memory_for(config, repo_root)
    try:
        GitRepo(repo_root).ensure_merge_driver()
    except PersistenceError as exc:
        err(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=1) from None
    if memory.exists() and all(memory.read(tier) is not None for tier in TIERS):
        print("[yellow]Recall is already initialized in this repository.[/yellow]")
        print(f"Path: {memory.path}")
        raise typer.Exit(code=0)

    tiers = render_template_tiers([], [])
    keys = build_key_manager(config)
    try:
        if keys is not None:
            tiers = {tier: keys.encrypt(text) for tier, text in tiers.items()}
        memory.ensure_gitattributes()
        memory.write_all(tiers, expected_revision=memory.revision())
    except (EncryptionError, PersistenceError) as exc:
        err(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=1) from None
    print(f"[green]✓ Created {memory.path.relative_to(repo_root)}/[/green]")
    print("[green]✓ Created snapshots (small.md, medium.md, large.md)[/green]")
    print("[green]✓ Created .gitattributes for merge strategy[/green]")
    installed = get_installed_extractors(default_extractors(repo_root))
    if installed:
        print("\n[cyan]Detected AI coding tools:[/cyan]")
        for extractor in installed:
            print(f"  [green]✓[/green] {extractor.name}")
    print("\n[bold]Next steps:[/bold]")
    print("  1. Use your AI coding assistant as usual")
    print("  2. Run [cyan]recall save[/cyan] to capture context")
    print("  3. Run [cyan]recall sync[/cyan] to share it with your team")


def load_cmd(*, size: str, output_format: str, quiet: bool) -> None:
    """Print one tier, decrypted, for piping into an assistant's context."""

    if size not in TIERS:
        err(f"[red]Unknown size: {size} (use small, medium or large)[/red]")
        raise typer.Exit(code=1)
    if output_format not in {"plain", "json"}:
        err(f"[red]Unknown format: {output_format} (use plain or json)[/red]")
        raise typer.Exit(code=1)

    config = load_config_and_logging()
    repo_root = repo_root_or_exit()
    memory = memory_for(config, repo_root)
    try:
        content = memory.read(size)
    except PersistenceError as exc:
        if not quiet:
            err(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from None

    if content is None:
        if not quiet:
            err(f"[yellow]No {size} snapshot found.[/yellow]")
            err("[dim]Run `recall save` to capture context.[/dim]")
        if output_format == "json":
            typer.echo(
                json.dumps(
                    {
                        "success": False,
                        "error": "no_snapshot",
                        "message": f"No {size} snapshot exists. Run 'recall save' first.",
                    }
                )
            )
        return

    encrypted = is_encrypted(content)
    if encrypted:
        keys = build_key_manager(config)
        try:
            if keys is None:
                raise EncryptionError("team memory is encrypted and no team key is configured")
            content = keys.decrypt(content)
        except EncryptionError as exc:
            if output_format == "json":
                typer.echo(json.dumps({"success": False, "error": "no_access", "message": str(exc)}))
            if not quiet:
                err(f"[red]Decryption failed: {exc}[/red]")
            raise typer.Exit(code=1) from None
        if not quiet:
            err("[green]✓ Decrypted[/green]")

    if size == "large":
        content = strip_event_log(content)
    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "success": True,
                    "size": size,
                    "content": content,
                    "tokens": estimate_tokens(content),
                    "encrypted": encrypted,
                }
            )
        )
    else:
        typer.echo(content)


def status_cmd() -> None:
    """Show tiers, captured events, detected tools and checkpoints."""

    config = load_config_and_logging()
    repo_root = repo_root_or_exit()
    memory = memory_for(config, repo_root)
    print("[bold]Recall Status[/bold]\n")
    if not memory.exists():
        print("[yellow]Not initialized[/yellow]")
        print("Run [cyan]recall init[/cyan] to get started.")
        return
    print(f"[green]✓ Initialized[/green] ({memory.path})\n")

    keys = build_key_manager(config)
    contents = memory.read_all()
    events = None
    large = contents.get("large")
    if large is not None:
        try:
            if is_encrypted(large):
                large = keys.decrypt(large) if keys is not None else None
            events = extract_event_log(large) if large is not None else None
        except EncryptionError as exc:
            print(f"[yellow]Cannot decrypt memory: {exc}[/yellow]\n")

    print("[bold]Events:[/bold]")
    if events is None:
        print("  [dim]unavailable[/dim]")
    else:
        print(f"  Total: {len(events)}")
        if events:
            print(f"  First: {events[0].day}")
            print(f"  Last: {events[-1].day}")
        for label, counter in (
            ("type", Counter(event.type for event in events)),
            ("tool", Counter(event.tool for event in events)),
            ("user", Counter(event.user for event in events)),
        ):
            if not counter:
                continue
            print(f"\n  By {label}:")
            for key, count in counter.most_common():
                print(f"    {key or 'unknown'}: {count}")

    print("\n[bold]Snapshots:[/bold]")
    for tier in TIERS:
        content = contents.get(tier)
        if content is None:
            print(f"  {tier}.md: [yellow]missing[/yellow]")
            continue
        state = "encrypted" if is_encrypted(content) else "plaintext"
        print(f"  {tier}.md: ~{estimate_tokens(content)} tokens ({state})")

    print("\n[bold]Encryption:[/bold]")
    if config.team_key:
        print(f"  static team key (v{config.team_key_version})")
    elif config.api_token:
        print(f"  key custody at {config.api_url}")
    else:
        print("  [dim]not configured (tiers are written in plaintext)[/dim]")

    extractors = default_extractors(repo_root)
    installed = {item.name for item in get_installed_extractors(extractors)}
    active = {item.name for item in get_active_extractors(extractors)}
    print("\n[bold]AI Coding Tools:[/bold]")
    if not installed:
        print("  [yellow]None detected[/yellow]")
    state = state_for(config)
    try:
        checkpoints = state.get_checkpoints(repo_root)
        last = state.last_sync_attempt(repo_root)
    finally:
        state.close()
    for extractor in extractors:
        if extractor.name not in installed:
            continue
        status = "[green]active[/green]" if extractor.name in active else "installed"
        checkpoint = checkpoints.get(extractor.name)
        since = f", last extracted {checkpoint.isoformat()}" if checkpoint else ""
        print(f"  {extractor.name}: {status}{since}")

    if last is not None:
        outcome = "[green]ok[/green]" if last["ok"] else f"[red]failed[/red] ({last['error']})"
        print(f"\n[bold]Last save:[/bold] {last['started_at']} {outcome}")
    print("\n[dim]Run [cyan]recall save[/cyan] to capture new sessions.[/dim]")
