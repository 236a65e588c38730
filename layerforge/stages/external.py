"""External Component Integrator.

Fetches an independently versioned component at a pinned reference, builds it
with its own toolchain in its own scope, and yields its artifact. The scope is
fully separate from the primary chain: a distinct ``Toolchain`` instance,
a distinct scratch directory, and a distinct cache store and artifact
directory.

Branch references are mutable. Every resolution (repository, reference,
commit, timestamp) is recorded; when a branch now resolves to a different
commit than the last recorded resolution, the drift is logged and recorded
but never treated as an error.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any

from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.errors import ExternalBuildError, FetchError, PipelineCancelledError
from layerforge.core.hasher import content_address, hash_tree
from layerforge.core.run_ledger import RunLedger
from layerforge.models.artifacts import Artifact, CacheKey
from layerforge.models.external import (
    ExternalComponentRef,
    IntegratedComponent,
    ResolvedReference,
)
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import EXTERNAL_INTEGRATION, StageState
from layerforge.stages.base import BaseStage
from layerforge.toolchain.protocols import (
    BuildKind,
    BuildRequest,
    SourceFetcher,
    SourceFetchError,
    Toolchain,
    ToolchainError,
)

logger = logging.getLogger(__name__)


class ExternalComponentIntegrator(BaseStage):
    """Stage ``external_integration``: reference -> ``IntegratedComponent``.

    Parameters
    ----------
    fetcher:
        Source-control client used to check out the reference.
    toolchain:
        The external scope's toolchain, invoked with ``BuildKind.EXTERNAL``.
    store, cache:
        The external scope's artifact store and cache index.
    scratch_root:
        Directory for checkouts and build scratch space.
    binary:
        Name of the artifact the component produces.
    ledger:
        Consulted for the previous resolution of the same reference.
    """

    error_class = ExternalBuildError

    def __init__(
        self,
        fetcher: SourceFetcher,
        toolchain: Toolchain,
        store: ContentAddressedStore,
        cache: DependencyCacheStore,
        scratch_root: Path,
        *,
        binary: str,
        profile: str = "release",
        retain_source: bool = False,
        ledger: RunLedger | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._toolchain = toolchain
        self._store = store
        self._cache = cache
        self._scratch_root = Path(scratch_root)
        self._binary = binary
        self._profile = profile
        self._retain_source = retain_source
        self._ledger = ledger
        self._cancel_event = cancel_event or threading.Event()

    @property
    def stage_id(self) -> str:
        return EXTERNAL_INTEGRATION

    @property
    def display_name(self) -> str:
        return "External Component Integrator"

    # ------------------------------------------------------------------
    # Resolution history
    # ------------------------------------------------------------------

    def previous_commit(self, ref: ExternalComponentRef) -> str | None:
        """Commit recorded by the most recent successful integration of *ref*."""
        if self._ledger is None:
            return None
        for entry in self._ledger.iter_stage_entries(self.stage_id):
            if entry.to_state != StageState.PASSED.value:
                continue
            details = entry.details
            if (
                details.get("repository") == ref.repository
                and details.get("reference") == ref.reference
                and details.get("commit")
            ):
                return details["commit"]
        return None

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def integrate(self, ref: ExternalComponentRef) -> IntegratedComponent:
        self._scratch_root.mkdir(parents=True, exist_ok=True)
        checkout_root = Path(tempfile.mkdtemp(prefix="checkout-", dir=self._scratch_root))
        keep = False
        try:
            try:
                fetched = self._fetcher.fetch(ref, checkout_root / "source")
            except SourceFetchError as exc:
                raise FetchError(f"cannot fetch {ref}: {exc}") from exc

            resolution = ResolvedReference(
                repository=ref.repository,
                reference=ref.reference,
                commit=fetched.commit,
                tree_digest=hash_tree(fetched.path),
                is_mutable=ref.is_mutable,
            )
            drifted_from = self._check_drift(ref, resolution)

            if self._cancel_event.is_set():
                raise PipelineCancelledError(
                    "cancelled before building the external component",
                    stage_id=self.stage_id,
                )

            key = CacheKey(
                fingerprint=content_address(
                    {"repository": ref.repository, "commit": resolution.commit}
                ),
                profile=self._profile,
            )
            entry, reused = self._cache.get_or_create(
                key, lambda: self._compile(fetched.path, resolution, checkout_root)
            )
            address = entry.artifacts.get(self._binary)
            if address is None or not self._store.verify(address):
                raise ExternalBuildError(
                    f"cached build of {resolution.commit[:12]} has no intact "
                    f"{self._binary!r} artifact"
                )

            artifact = Artifact(
                name=self._binary,
                stage_id=self.stage_id,
                content_address=address,
                profile=self._profile,
                size_bytes=self._store.size(address),
                metadata={
                    "repository": ref.repository,
                    "reference": ref.reference,
                    "commit": resolution.commit,
                    "tree_digest": resolution.tree_digest,
                    "resolved_at": resolution.resolved_at.isoformat(),
                },
            )
            logger.info(
                "%s %s %s at %s",
                "Reused" if reused else "Built",
                self._binary,
                ref,
                resolution.commit[:12],
            )
            keep = self._retain_source
            return IntegratedComponent(
                artifact=artifact,
                resolution=resolution,
                source_path=fetched.path if keep else None,
                reused=reused,
                drifted_from=drifted_from,
            )
        finally:
            if not keep:
                shutil.rmtree(checkout_root, ignore_errors=True)

    def _check_drift(
        self, ref: ExternalComponentRef, resolution: ResolvedReference
    ) -> str | None:
        previous = self.previous_commit(ref)
        if previous is None or previous == resolution.commit:
            return None
        logger.warning(
            "%s moved from %s to %s since the last recorded build",
            ref,
            previous[:12],
            resolution.commit[:12],
        )
        return previous

    def _compile(
        self, source: Path, resolution: ResolvedReference, checkout_root: Path
    ) -> dict[str, str]:
        request = BuildRequest(
            unit=self._binary,
            kind=BuildKind.EXTERNAL,
            version=resolution.commit,
            source=source,
            workdir=checkout_root / "work",
            output_path=checkout_root / "out" / self._binary,
            profile=self._profile,
        )
        try:
            output = Path(self._toolchain.build(request))
        except ToolchainError as exc:
            raise ExternalBuildError(
                f"{self._binary} at {resolution.commit[:12]}: {exc}"
            ) from exc
        if not output.is_file():
            raise ExternalBuildError(f"{self._binary}: toolchain produced no output")
        blob = self._store.store_file(output, name=self._binary)
        return {self._binary: blob.content_address}

    # ------------------------------------------------------------------
    # Pipeline stage
    # ------------------------------------------------------------------

    def describe_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        return {"external": recipe.external.model_dump(mode="json", exclude={"toolchain"})}

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        component = self.integrate(recipe.external.ref)
        resolution = component.resolution
        details: dict[str, Any] = {
            "repository": resolution.repository,
            "reference": resolution.reference,
            "commit": resolution.commit,
            "resolved_at": resolution.resolved_at.isoformat(),
            "is_mutable": resolution.is_mutable,
            "cache_hit": component.reused,
        }
        if component.drifted_from is not None:
            details["drifted_from"] = component.drifted_from
        return {
            "artifact": component.artifact.content_address,
            "commit": resolution.commit,
            "_component": component,
            "_artifact_refs": [component.artifact.content_address],
            "_details": details,
        }
