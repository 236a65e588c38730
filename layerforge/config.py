"""Runtime settings, env-driven and shared by the CLI and the orchestrator.

Reads from a .env file and LAYERFORGE_* environment variables. Per-recipe
choices (profile, features, toolchain commands) live in the recipe file, not
here; these settings describe where a workspace keeps its state and how the
engine behaves on this machine.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Machine-level configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LAYERFORGE_LOG_LEVEL=DEBUG
        export LAYERFORGE_WORKSPACE_PATH=/var/cache/layerforge
        export LAYERFORGE_CACHE_CLAIM_TIMEOUT_SECONDS=7200

    Or via .env file::

        LAYERFORGE_ENVIRONMENT=ci
        LAYERFORGE_MAX_PARALLEL_BRANCHES=2
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYERFORGE_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    workspace_path: Path = Path(".layerforge")
    ledger_path: Path = Path(".layerforge/ledger.db")
    artifact_store_path: Path = Path(".layerforge/artifacts")
    cache_db_path: Path = Path(".layerforge/dependency-cache.db")
    external_cache_path: Path = Path(".layerforge/external")
    image_output_path: Path = Path(".layerforge/images")

    # Scheduling
    max_parallel_branches: int = 2

    # Cache-on-miss coordination
    cache_claim_timeout_seconds: float = 3600.0
    cache_poll_interval_seconds: float = 0.5

    # Collaborator subprocesses
    command_timeout_seconds: float | None = None


# Module-level singleton, import as `from layerforge.config import settings`
settings = ForgeSettings()
