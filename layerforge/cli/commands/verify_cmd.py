"""``layerforge verify``: verify ledger hash chains."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from layerforge.cli.options import WORKSPACE_OPTION, pipeline_config
from layerforge.core.run_ledger import LedgerIntegrityError, RunLedger
from layerforge.monitor.renderer import MonitorRenderer

console = Console()


def verify_cmd(
    run_id: str = typer.Argument(None, help="Run to verify (default: every run)."),
    workspace: Path = WORKSPACE_OPTION,
) -> None:
    """Verify the hash chain of one run, or of every run in the ledger."""
    db_path = pipeline_config(workspace).ledger_db_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    ledger = RunLedger(db_path)
    renderer = MonitorRenderer(console)
    run_ids = [run_id] if run_id else ledger.get_all_run_ids()

    broken = 0
    for rid in run_ids:
        try:
            valid = ledger.verify_chain(rid) and bool(ledger.get_run_entries(rid))
        except LedgerIntegrityError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            valid = False
        renderer.print_chain_verification(rid, valid)
        broken += not valid

    if broken:
        raise typer.Exit(code=1)
