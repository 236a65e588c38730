"""Outcome of a successful pipeline run."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from layerforge.models.artifacts import Artifact
from layerforge.models.external import ResolvedReference
from layerforge.models.image import RuntimeImage
from layerforge.models.plan import BuildPlan
from layerforge.models.stages import PipelinePhase, StageState


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    phase: PipelinePhase
    plan: BuildPlan
    dependency_cache_key: str
    dependency_cache_hit: bool
    primary_artifact: Artifact
    external_artifact: Artifact
    external_cache_hit: bool
    resolution: ResolvedReference
    drifted_from: str | None = None
    image: RuntimeImage
    stage_states: dict[str, StageState] = {}
