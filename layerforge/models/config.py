"""Pipeline configuration model: where a workspace keeps its state."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict

from layerforge.config import ForgeSettings


class PipelineConfig(BaseModel):
    """Storage locations and scheduling knobs for ``BuildPipeline``."""

    model_config = ConfigDict(frozen=True)

    workspace_path: Path = Path(".layerforge")
    ledger_db_path: Path = Path(".layerforge/ledger.db")
    artifact_store_path: Path = Path(".layerforge/artifacts")
    cache_db_path: Path = Path(".layerforge/dependency-cache.db")
    external_cache_path: Path = Path(".layerforge/external")
    image_output_path: Path = Path(".layerforge/images")
    max_parallel_branches: int = 2
    cache_claim_timeout_seconds: float = 3600.0
    cache_poll_interval_seconds: float = 0.5
    command_timeout_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: ForgeSettings) -> PipelineConfig:
        return cls(
            workspace_path=settings.workspace_path,
            ledger_db_path=settings.ledger_path,
            artifact_store_path=settings.artifact_store_path,
            cache_db_path=settings.cache_db_path,
            external_cache_path=settings.external_cache_path,
            image_output_path=settings.image_output_path,
            max_parallel_branches=settings.max_parallel_branches,
            cache_claim_timeout_seconds=settings.cache_claim_timeout_seconds,
            cache_poll_interval_seconds=settings.cache_poll_interval_seconds,
            command_timeout_seconds=settings.command_timeout_seconds,
        )

    @classmethod
    def under(cls, root: Path, **overrides: object) -> PipelineConfig:
        """All state beneath a single workspace directory."""
        root = Path(root)
        fields: dict[str, object] = {
            "workspace_path": root,
            "ledger_db_path": root / "ledger.db",
            "artifact_store_path": root / "artifacts",
            "cache_db_path": root / "dependency-cache.db",
            "external_cache_path": root / "external",
            "image_output_path": root / "images",
        }
        fields.update(overrides)
        return cls.model_validate(fields)
