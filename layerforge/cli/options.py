"""Options and helpers shared by the CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from layerforge.config import settings
from layerforge.core.recipe_loader import DEFAULT_RECIPE, RecipeError, load_recipe
from layerforge.models.config import PipelineConfig
from layerforge.models.recipe import BuildRecipe

RECIPE_ARGUMENT = typer.Argument(
    Path(DEFAULT_RECIPE),
    help="Recipe file, or a directory containing layerforge.recipe.toml.",
)
WORKSPACE_OPTION = typer.Option(
    None,
    "--workspace",
    "-w",
    help="Keep all state under this directory (default: LAYERFORGE_* settings).",
)


def pipeline_config(workspace: Path | None) -> PipelineConfig:
    if workspace is not None:
        return PipelineConfig.under(workspace)
    return PipelineConfig.from_settings(settings)


def parse_features(features: str | None) -> list[str] | None:
    """``--features "a,b c"`` -> ``["a", "b", "c"]``; None when not given."""
    if features is None:
        return None
    return [f for f in features.replace(",", " ").split() if f]


def recipe_or_exit(
    console: Console,
    path: Path,
    *,
    profile: str | None = None,
    features: str | None = None,
    extra_flags: str | None = None,
) -> BuildRecipe:
    try:
        recipe = load_recipe(path)
    except RecipeError as exc:
        console.print(f"[bold red]Recipe error:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc
    return recipe.with_overrides(
        profile=profile,
        features=parse_features(features),
        extra_flags=extra_flags,
    )
