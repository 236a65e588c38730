"""``layerforge status [RUN_ID]``: show the build monitor for a run.

Defaults to the most recent run. The monitor is a read-only projection of
the run ledger.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from layerforge.cli.options import WORKSPACE_OPTION, pipeline_config
from layerforge.core.run_ledger import RunLedger
from layerforge.monitor.projection import MonitorProjection
from layerforge.monitor.renderer import MonitorRenderer

console = Console()


def status_cmd(
    run_id: str = typer.Argument(None, help="Run to show (default: the latest)."),
    workspace: Path = WORKSPACE_OPTION,
    list_runs: bool = typer.Option(False, "--list", help="List known runs."),
) -> None:
    """Show the build monitor for a pipeline run."""
    db_path = pipeline_config(workspace).ledger_db_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        console.print("[dim]Build first with: layerforge build[/dim]")
        raise typer.Exit(code=1)

    ledger = RunLedger(db_path)
    runs = ledger.get_all_run_ids()
    if list_runs:
        for rid in runs:
            console.print(f"[cyan]{rid}[/cyan]")
        return

    if run_id is None:
        if not runs:
            console.print("[dim]No runs recorded yet.[/dim]")
            raise typer.Exit(code=1)
        run_id = runs[0]
    elif run_id not in runs:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        if runs:
            console.print("\n[bold]Available runs:[/bold]")
            for rid in runs[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
            if len(runs) > 10:
                console.print(f"  [dim]... and {len(runs) - 10} more[/dim]")
        raise typer.Exit(code=1)

    MonitorRenderer(console).print_snapshot(MonitorProjection(ledger).snapshot(run_id))
