"""Rich terminal renderer for the build monitor.

Color scheme
------------
- green     : PASSED
- red       : FAILED / BLOCKED
- yellow    : RUNNING
- dim       : NOT_STARTED
- magenta   : CANCELLED
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from layerforge.models.stages import PipelinePhase, StageState

if TYPE_CHECKING:
    from layerforge.monitor.projection import MonitorSnapshot, StageStatus


_STATE_STYLES: dict[StageState, str] = {
    StageState.PASSED: "bold green",
    StageState.FAILED: "bold red",
    StageState.RUNNING: "bold yellow",
    StageState.NOT_STARTED: "dim",
    StageState.CANCELLED: "magenta",
    StageState.BLOCKED: "bold red",
}

_STATE_LABELS: dict[StageState, str] = {
    StageState.PASSED: "[green]PASSED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.NOT_STARTED: "[dim]NOT STARTED[/dim]",
    StageState.CANCELLED: "[magenta]CANCELLED[/magenta]",
    StageState.BLOCKED: "[bold red]BLOCKED[/bold red]",
}

_PHASE_STYLES: dict[PipelinePhase, str] = {
    PipelinePhase.DONE: "green",
    PipelinePhase.FAILED: "bold red",
    PipelinePhase.CANCELLED: "magenta",
}


def _short(address: str | None, width: int = 19) -> str:
    return address[:width] if address else "-"


class MonitorRenderer:
    """Renders ``MonitorSnapshot`` as Rich terminal output."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_snapshot(self, snapshot: MonitorSnapshot) -> Panel:
        """Render a snapshot as a Panel containing the stage table and a summary."""
        table = self._build_stage_table(snapshot)

        phase_style = _PHASE_STYLES.get(snapshot.phase, "yellow")
        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Phase:[/bold] [{phase_style}]{snapshot.phase.value}[/{phase_style}]",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
            f"[bold]Artifacts:[/bold] {snapshot.artifact_count}",
            f"[bold]Chain:[/bold] {chain_status}",
        ]
        facts = [f"[bold]Fingerprint:[/bold] {_short(snapshot.fingerprint)}"]
        if snapshot.external_commit:
            facts.append(f"[bold]External:[/bold] {snapshot.external_commit[:12]}")
        if snapshot.drifted_from:
            facts.append(f"[yellow]drifted from {snapshot.drifted_from[:12]}[/yellow]")
        if snapshot.image_id:
            facts.append(f"[bold]Image:[/bold] {_short(snapshot.image_id)}")

        content = Group(
            table,
            Text(""),
            Text.from_markup("  |  ".join(summary_parts)),
            Text.from_markup("  |  ".join(facts)),
        )
        return Panel(
            content,
            title="[bold]layerforge build monitor[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    @staticmethod
    def _details(stage: StageStatus) -> str:
        parts: list[str] = []
        if stage.error:
            parts.append(f"[red]{escape(stage.error)}[/red]")
        if stage.block_reason:
            parts.append(f"[red]{escape(stage.block_reason)}[/red]")
        if "cache_hit" in stage.details and stage.state == StageState.PASSED:
            parts.append("cache hit" if stage.details["cache_hit"] else "cache miss")
        if "drifted_from" in stage.details:
            parts.append(f"[yellow]drift from {stage.details['drifted_from'][:12]}[/yellow]")
        if stage.entered_at:
            parts.append(f"[dim]{stage.entered_at.strftime('%H:%M:%S')}[/dim]")
        return " | ".join(parts) if parts else "[dim]-[/dim]"

    def _build_stage_table(self, snapshot: MonitorSnapshot) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=28)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Details", min_width=20)
        table.add_column("Artifacts", justify="right", width=10)

        for i, stage in enumerate(snapshot.stages, start=1):
            style = _STATE_STYLES.get(stage.state, "")
            table.add_row(
                str(i),
                f"[{style}]{stage.display_name}[/{style}]",
                _STATE_LABELS.get(stage.state, stage.state.value),
                self._details(stage),
                str(len(set(stage.artifact_refs))),
            )
        return table

    def print_snapshot(self, snapshot: MonitorSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
