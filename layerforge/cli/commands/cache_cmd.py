"""``layerforge cache``: list dependency and external cache entries."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from layerforge.cli.options import WORKSPACE_OPTION, pipeline_config
from layerforge.core.cache_store import DependencyCacheStore

console = Console()


def _entries_table(title: str, store: DependencyCacheStore, fingerprint: str | None) -> Table:
    table = Table(title=title)
    table.add_column("Cache key", style="cyan")
    table.add_column("Fingerprint")
    table.add_column("Profile", style="green")
    table.add_column("Features")
    table.add_column("Units", justify="right")
    table.add_column("Created", style="dim")
    for entry in store.entries(fingerprint):
        table.add_row(
            entry.cache_key[:19],
            entry.fingerprint[:19],
            entry.profile,
            ", ".join(entry.features) or "-",
            str(len(entry.artifacts)),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return table


def cache_cmd(
    workspace: Path = WORKSPACE_OPTION,
    fingerprint: str = typer.Option(
        None, "--fingerprint", "-f", help="Only entries for this fingerprint."
    ),
) -> None:
    """Show the cache entries of both toolchain scopes."""
    config = pipeline_config(workspace)
    scopes = [
        ("Dependency cache", config.cache_db_path),
        ("External component cache", config.external_cache_path / "cache.db"),
    ]
    found = False
    for title, path in scopes:
        if not path.exists():
            continue
        found = True
        store = DependencyCacheStore(path)
        console.print(_entries_table(title, store, fingerprint))
        for key, owner in store.pending_claims():
            console.print(f"[yellow]Build in progress:[/yellow] {key[:19]} by {owner}")
    if not found:
        console.print("[dim]No cache yet. Run: layerforge build[/dim]")
