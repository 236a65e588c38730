"""Main Typer application. Imports and registers all CLI commands.

Entry point: ``layerforge`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from layerforge import __version__
from layerforge.cli.commands.build_cmd import build_cmd
from layerforge.cli.commands.cache_cmd import cache_cmd
from layerforge.cli.commands.dockerfile_cmd import dockerfile_cmd
from layerforge.cli.commands.plan_cmd import plan_cmd
from layerforge.cli.commands.status_cmd import status_cmd
from layerforge.cli.commands.verify_cmd import verify_cmd
from layerforge.config import settings

app = typer.Typer(
    name="layerforge",
    help="layerforge: layered, cache-aware runtime image builds.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="plan", help="Plan the dependency closure and show its fingerprint.")(plan_cmd)
app.command(name="build", help="Run the pipeline and publish the runtime image.")(build_cmd)
app.command(name="cache", help="List dependency and external cache entries.")(cache_cmd)
app.command(name="status", help="Show the build monitor for a run.")(status_cmd)
app.command(name="verify", help="Verify run ledger hash chains.")(verify_cmd)
app.command(name="dockerfile", help="Render the recipe as a multi-stage build file.")(
    dockerfile_cmd
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"layerforge {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        settings.log_level, "--log-level", help="Logging level (LAYERFORGE_LOG_LEVEL)."
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
