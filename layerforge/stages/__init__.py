"""layerforge pipeline stages.

Usage::

    from layerforge.stages import FingerprintPlanner

    plan = FingerprintPlanner().plan(manifest, config)
"""

from __future__ import annotations

from layerforge.stages.application import PrimaryArtifactBuilder
from layerforge.stages.assembler import RuntimeImageAssembler
from layerforge.stages.base import BaseStage, StagePrerequisiteError
from layerforge.stages.dependency_cache import DependencyCacheBuilder
from layerforge.stages.external import ExternalComponentIntegrator
from layerforge.stages.planner import FingerprintPlanner

__all__ = [
    "BaseStage",
    "StagePrerequisiteError",
    "FingerprintPlanner",
    "DependencyCacheBuilder",
    "PrimaryArtifactBuilder",
    "ExternalComponentIntegrator",
    "RuntimeImageAssembler",
]
