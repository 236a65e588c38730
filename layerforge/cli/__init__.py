"""layerforge CLI, Typer-based command-line interface.

Provides the ``layerforge`` command with subcommands for planning, building,
inspecting caches, monitoring runs, verifying the ledger and exporting a
recipe as a container build file.

All output uses Rich for formatted terminal display.
"""
