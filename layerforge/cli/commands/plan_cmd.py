"""``layerforge plan``: show the dependency plan and its cache status."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from layerforge.cli.options import (
    RECIPE_ARGUMENT,
    WORKSPACE_OPTION,
    pipeline_config,
    recipe_or_exit,
)
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.errors import PlanGenerationError
from layerforge.core.manifest_loader import load_manifest
from layerforge.stages.dependency_cache import DependencyCacheBuilder
from layerforge.stages.planner import FingerprintPlanner

console = Console()


def plan_cmd(
    recipe_path: Path = RECIPE_ARGUMENT,
    profile: str = typer.Option(None, "--profile", help="Build profile (BUILD_PROFILE)."),
    features: str = typer.Option(None, "--features", help="Comma-separated feature flags."),
    extra_flags: str = typer.Option(None, "--extra-flags", help="Extra compiler flags."),
    workspace: Path = WORKSPACE_OPTION,
    fingerprint_only: bool = typer.Option(
        False, "--fingerprint", help="Print only the fingerprint."
    ),
) -> None:
    """Plan the dependency closure without building anything."""
    recipe = recipe_or_exit(
        console, recipe_path, profile=profile, features=features, extra_flags=extra_flags
    )
    config = recipe.build.config
    try:
        manifest = load_manifest(
            recipe.project.source_root,
            manifest_name=recipe.project.manifest,
            lockfile_name=recipe.project.lockfile,
        )
        plan = FingerprintPlanner().plan(manifest, config)
    except PlanGenerationError as exc:
        console.print(f"[bold red]Planning failed:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    if fingerprint_only:
        console.print(plan.fingerprint, highlight=False)
        return

    key = DependencyCacheBuilder.cache_key(plan, config)
    cache_path = pipeline_config(workspace).cache_db_path
    cached = cache_path.exists() and DependencyCacheStore(cache_path).lookup(key.digest)

    table = Table(title=f"Dependency plan for {plan.project_name}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Package", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Features")
    table.add_column("Requires", style="dim")
    for i, dependency in enumerate(plan.dependencies, start=1):
        name = f"[bold]{dependency.name}[/bold]" if dependency.direct else dependency.name
        table.add_row(
            str(i),
            name,
            dependency.version,
            ", ".join(dependency.features) or "-",
            ", ".join(dependency.requires) or "-",
        )
    console.print(table)
    console.print(f"[bold]Fingerprint:[/bold] {plan.fingerprint}", highlight=False)
    console.print(f"[bold]Cache key:[/bold]   {key.digest}", highlight=False)
    status = "[green]cached[/green]" if cached else "[yellow]not cached[/yellow]"
    console.print(
        f"[bold]Profile:[/bold] {config.profile}  [bold]Features:[/bold] "
        f"{', '.join(config.features) or '-'}  [bold]Cache:[/bold] {status}"
    )
