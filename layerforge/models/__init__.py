"""layerforge data models. All Pydantic v2 and frozen."""

from layerforge.models.artifacts import Artifact, CacheEntry, CacheKey, StoredBlob
from layerforge.models.config import PipelineConfig
from layerforge.models.external import (
    ExternalComponentRef,
    FetchedSource,
    IntegratedComponent,
    ResolvedReference,
)
from layerforge.models.image import (
    AuxiliaryFileSpec,
    CopiedFile,
    CopySpec,
    EndpointProtocol,
    Entrypoint,
    EntrypointSpec,
    ExposedEndpoint,
    ImageSpec,
    RuntimeImage,
)
from layerforge.models.ledger import LedgerEntry
from layerforge.models.manifest import (
    BuildConfig,
    DependencyManifest,
    DependencySpec,
    LockedPackage,
)
from layerforge.models.pipeline import PipelineResult
from layerforge.models.plan import BuildPlan, PlannedDependency
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    VALID_TRANSITIONS,
    PipelinePhase,
    StageDefinition,
    StageState,
)

__all__ = [
    # manifest
    "BuildConfig",
    "DependencyManifest",
    "DependencySpec",
    "LockedPackage",
    # plan
    "BuildPlan",
    "PlannedDependency",
    # artifacts
    "Artifact",
    "CacheEntry",
    "CacheKey",
    "StoredBlob",
    # external
    "ExternalComponentRef",
    "FetchedSource",
    "IntegratedComponent",
    "ResolvedReference",
    # image
    "AuxiliaryFileSpec",
    "CopiedFile",
    "CopySpec",
    "EndpointProtocol",
    "Entrypoint",
    "EntrypointSpec",
    "ExposedEndpoint",
    "ImageSpec",
    "RuntimeImage",
    # stages
    "StageState",
    "StageDefinition",
    "PipelinePhase",
    "VALID_TRANSITIONS",
    "DEFAULT_STAGE_DEFINITIONS",
    # ledger
    "LedgerEntry",
    # config
    "PipelineConfig",
    "PipelineResult",
    "BuildRecipe",
]
