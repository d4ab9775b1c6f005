from __future__ import annotations

import typer
from rich import print

from . import __version__
from .commands.capture_cmds import save_cmd, sync_cmd
from .commands.key_cmds import rotate_key_cmd
from .commands.memory_cmds import init_cmd, load_cmd, status_cmd

app = typer.Typer(help="recall: encrypted team memory for AI coding assistants")


@app.command()
def init() -> None:
    """Initialize the memory directory in this repository."""

    init_cmd()


@app.command()
def save(
    auto: bool = typer.Option(False, "--auto", help="Run from a hook: silent, always exit 0"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
) -> None:
    """Capture new sessions and rewrite the memory tiers."""

    save_cmd(auto=auto, quiet=quiet)


@app.command()
def load(
    size: str = typer.Option("small", "--size", "-s", help="Tier to print: small, medium or large"),
    output_format: str = typer.Option("plain", "--format", "-f", help="Output format: plain or json"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress status messages"),
) -> None:
    """Print a memory tier (decrypted) to stdout."""

    load_cmd(size=size, output_format=output_format, quiet=quiet)


@app.command()
def sync(
    regenerate: bool = typer.Option(
        False, "--regenerate", help="Re-extract everything and rebuild all tiers"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
) -> None:
    """Pull, merge, commit and push team memory."""

    sync_cmd(regenerate=regenerate, quiet=quiet)


@app.command()
def status() -> None:
    """Show memory, event and tool status."""

    status_cmd()


@app.command("rotate-key")
def rotate_key(
    push: bool = typer.Option(True, help="Commit and push the re-encrypted tiers"),
) -> None:
    """Rotate the team key and re-encrypt all tiers."""

    rotate_key_cmd(push=push)


@app.command()
def version() -> None:
    """Print the recall version."""

    print(__version__)


if __name__ == "__main__":
    app()
