"""Primary Artifact Builder.

Links the application against the cached dependency outputs. Dependencies
are materialized from the artifact store as prebuilt inputs; only the
application unit is handed to the toolchain. The build runs in a private
scratch directory that is discarded afterwards, so a failed build leaves
nothing behind in the artifact store.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any

from layerforge.core.artifact_store import ArtifactIntegrityError, ContentAddressedStore
from layerforge.core.errors import ApplicationBuildError
from layerforge.core.hasher import hash_tree
from layerforge.models.artifacts import Artifact, CacheEntry
from layerforge.models.manifest import BuildConfig, DependencyManifest
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import APPLICATION_BUILD, DEPENDENCY_CACHE, PLAN
from layerforge.stages.base import BaseStage
from layerforge.toolchain.protocols import BuildKind, BuildRequest, Toolchain, ToolchainError

logger = logging.getLogger(__name__)


class PrimaryArtifactBuilder(BaseStage):
    """Stage ``application_build``: cache entry + sources -> ``Artifact``."""

    error_class = ApplicationBuildError

    def __init__(
        self,
        toolchain: Toolchain,
        store: ContentAddressedStore,
        scratch_root: Path,
    ) -> None:
        self._toolchain = toolchain
        self._store = store
        self._scratch_root = Path(scratch_root)

    @property
    def stage_id(self) -> str:
        return APPLICATION_BUILD

    @property
    def display_name(self) -> str:
        return "Primary Artifact Builder"

    def build(
        self,
        entry: CacheEntry,
        manifest: DependencyManifest,
        config: BuildConfig,
        binary: str | None = None,
    ) -> Artifact:
        binary = binary or manifest.project_name
        self._scratch_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="app-", dir=self._scratch_root) as tmp:
            scratch = Path(tmp)
            inputs: dict[str, Path] = {}
            for name, address in sorted(entry.artifacts.items()):
                try:
                    inputs[name] = self._store.materialize(address, scratch / "deps" / name)
                except (FileNotFoundError, ArtifactIntegrityError) as exc:
                    raise ApplicationBuildError(
                        f"prebuilt dependency {name!r} is unavailable: {exc}"
                    ) from exc

            source_digest = hash_tree(manifest.source_root, manifest.sources)
            request = BuildRequest(
                unit=binary,
                kind=BuildKind.APPLICATION,
                version=manifest.project_version,
                source=manifest.source_root,
                workdir=scratch / "work",
                output_path=scratch / "out" / binary,
                profile=config.profile,
                features=config.features,
                extra_flags=config.extra_flags,
                inputs=inputs,
            )
            try:
                output = Path(self._toolchain.build(request))
            except ToolchainError as exc:
                raise ApplicationBuildError(f"{binary}: {exc}") from exc
            if not output.is_file():
                raise ApplicationBuildError(f"{binary}: toolchain produced no output")
            blob = self._store.store_file(output, name=binary)

        logger.info("Built %s -> %s", binary, blob.content_address[:19])
        return Artifact(
            name=binary,
            stage_id=self.stage_id,
            content_address=blob.content_address,
            profile=config.profile,
            features=config.features,
            size_bytes=blob.size_bytes,
            metadata={
                "version": manifest.project_version,
                "source_digest": source_digest,
                "dependency_fingerprint": entry.fingerprint,
                "cache_key": entry.cache_key,
            },
        )

    # ------------------------------------------------------------------
    # Pipeline stage
    # ------------------------------------------------------------------

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        results = run_context["stage_results"]
        artifact = self.build(
            results[DEPENDENCY_CACHE]["_entry"],
            results[PLAN]["_manifest"],
            results[PLAN]["config"],
            recipe.project.binary,
        )
        return {
            "artifact": artifact.model_dump(mode="json", exclude={"created_at"}),
            "_artifact": artifact,
            "_artifact_refs": [artifact.content_address],
            "_details": {
                "artifact": artifact.name,
                "source_digest": artifact.metadata["source_digest"],
            },
        }
