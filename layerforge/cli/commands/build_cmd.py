"""``layerforge build``: run the full pipeline for a recipe.

Prints the build monitor for the run when it finishes. Any stage failure
prints the failing stage and its error and exits with status 1; no image is
published in that case.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from layerforge.cli.options import (
    RECIPE_ARGUMENT,
    WORKSPACE_OPTION,
    pipeline_config,
    recipe_or_exit,
)
from layerforge.core.errors import PipelineError
from layerforge.core.orchestrator import BuildPipeline
from layerforge.monitor.projection import MonitorProjection
from layerforge.monitor.renderer import MonitorRenderer

console = Console()


def build_cmd(
    recipe_path: Path = RECIPE_ARGUMENT,
    profile: str = typer.Option(None, "--profile", help="Build profile (BUILD_PROFILE)."),
    features: str = typer.Option(None, "--features", help="Comma-separated feature flags."),
    extra_flags: str = typer.Option(None, "--extra-flags", help="Extra compiler flags."),
    workspace: Path = WORKSPACE_OPTION,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Print only the image id."),
) -> None:
    """Build the runtime image described by a recipe."""
    recipe = recipe_or_exit(
        console, recipe_path, profile=profile, features=features, extra_flags=extra_flags
    )
    pipeline = BuildPipeline(recipe, pipeline_config(workspace))

    try:
        result = pipeline.run()
    except PipelineError as exc:
        if not quiet:
            MonitorRenderer(console).print_snapshot(
                MonitorProjection(pipeline.ledger).snapshot(pipeline.run_id)
            )
        console.print(
            Panel(
                "\n".join([
                    f"[bold]Run:[/bold]   {pipeline.run_id}",
                    f"[bold]Stage:[/bold] {exc.stage_id or '-'}",
                    f"[bold]Error:[/bold] {type(exc).__name__}: {escape(str(exc))}",
                ]),
                title="[bold red]Build failed[/bold red]",
                border_style="red",
                padding=(1, 2),
            )
        )
        raise typer.Exit(code=1) from exc

    if quiet:
        console.print(result.image.image_id, highlight=False)
        return

    MonitorRenderer(console).print_snapshot(
        MonitorProjection(pipeline.ledger).snapshot(pipeline.run_id)
    )
    image = result.image
    lines = [
        "[bold green]Image published[/bold green]",
        "",
        f"[bold]Image:[/bold]        {image.image_id}",
        f"[bold]Layout:[/bold]       {image.layout_path}",
        f"[bold]Entrypoint:[/bold]   {image.entrypoint.path}",
        f"[bold]Endpoints:[/bold]    {' '.join(str(e) for e in image.exposed_endpoints) or '-'}",
        f"[bold]Fingerprint:[/bold]  {result.plan.fingerprint}",
        f"[bold]Dep. cache:[/bold]   {'hit' if result.dependency_cache_hit else 'built'}",
        f"[bold]External:[/bold]     {result.resolution.repository}@"
        f"{result.resolution.reference} -> {result.resolution.commit[:12]} "
        f"({'cached' if result.external_cache_hit else 'built'})",
    ]
    if result.drifted_from:
        lines.append(
            f"[yellow]External reference moved from {result.drifted_from[:12]}[/yellow]"
        )
    console.print(Panel("\n".join(lines), title="[bold]layerforge[/bold]", border_style="green"))
