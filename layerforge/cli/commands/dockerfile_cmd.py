"""``layerforge dockerfile``: render a recipe as a multi-stage build file."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from layerforge.cli.options import RECIPE_ARGUMENT, recipe_or_exit
from layerforge.core.errors import PlanGenerationError
from layerforge.core.manifest_loader import load_manifest
from layerforge.export.dockerfile import render_dockerfile
from layerforge.stages.planner import FingerprintPlanner

console = Console()


def dockerfile_cmd(
    recipe_path: Path = RECIPE_ARGUMENT,
    output: Path = typer.Option(None, "--output", "-o", help="Write to this file."),
    with_plan: bool = typer.Option(
        True,
        "--plan/--no-plan",
        help="Emit one dependency step per planned package.",
    ),
) -> None:
    """Print (or write) the container build file equivalent to a recipe."""
    recipe = recipe_or_exit(console, recipe_path)
    plan = None
    if with_plan:
        try:
            manifest = load_manifest(
                recipe.project.source_root,
                manifest_name=recipe.project.manifest,
                lockfile_name=recipe.project.lockfile,
            )
            plan = FingerprintPlanner().plan(manifest, recipe.build.config)
        except PlanGenerationError as exc:
            console.print(f"[bold red]Planning failed:[/bold red] {escape(str(exc))}")
            raise typer.Exit(code=1) from exc

    text = render_dockerfile(recipe, plan)
    if output is None:
        console.out(text, end="", highlight=False)
        return
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]Wrote {output}[/green]")
