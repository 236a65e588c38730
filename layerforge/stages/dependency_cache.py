"""Dependency Cache Builder.

Compiles the dependency closure of a ``BuildPlan`` once per cache key and
reuses it afterwards. The key is (fingerprint, profile, features, extra
flags); application sources are not part of it. Coordination between
concurrent builders of the same key lives in ``DependencyCacheStore``.
"""

from __future__ import annotations

import logging
import tempfile
import threading
from pathlib import Path
from typing import Any

from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.errors import DependencyBuildError, PipelineCancelledError, PipelineError
from layerforge.models.artifacts import CacheEntry, CacheKey
from layerforge.models.manifest import BuildConfig
from layerforge.models.plan import BuildPlan
from layerforge.models.stages import DEPENDENCY_CACHE, PLAN
from layerforge.stages.base import BaseStage
from layerforge.toolchain.protocols import BuildKind, BuildRequest, Toolchain, ToolchainError

logger = logging.getLogger(__name__)


class DependencyCacheBuilder(BaseStage):
    """Stage ``dependency_cache``: ``BuildPlan`` -> ``CacheEntry``.

    Parameters
    ----------
    toolchain:
        The primary toolchain; invoked with ``BuildKind.DEPENDENCY`` only.
    store:
        Artifact store holding the compiled outputs.
    cache:
        Shared cache index.
    scratch_root:
        Directory for per-build scratch space.
    cancel_event:
        Checked between compilation units.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        store: ContentAddressedStore,
        cache: DependencyCacheStore,
        scratch_root: Path,
        *,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._toolchain = toolchain
        self._store = store
        self._cache = cache
        self._scratch_root = Path(scratch_root)
        self._cancel_event = cancel_event or threading.Event()

    @property
    def stage_id(self) -> str:
        return DEPENDENCY_CACHE

    @property
    def display_name(self) -> str:
        return "Dependency Cache Builder"

    def wrap_error(self, exc: Exception) -> PipelineError:
        return DependencyBuildError("<cache>", f"{type(exc).__name__}: {exc}")

    @staticmethod
    def cache_key(plan: BuildPlan, config: BuildConfig) -> CacheKey:
        return CacheKey(
            fingerprint=plan.fingerprint,
            profile=config.profile,
            features=config.features,
            extra_flags=config.extra_flags,
        )

    def build(self, plan: BuildPlan, config: BuildConfig) -> tuple[CacheEntry, bool]:
        """Return the cache entry for *plan*, compiling on a miss.

        Returns ``(entry, reused)``.
        """
        key = self.cache_key(plan, config)
        entry, reused = self._cache.get_or_create(
            key, lambda: self._compile(plan, config)
        )
        if reused:
            self._check_outputs(plan, entry)
            logger.info(
                "Reusing dependency cache %s (%d units)",
                entry.cache_key[:19],
                len(entry.artifacts),
            )
        else:
            logger.info(
                "Built dependency cache %s (%d units)",
                entry.cache_key[:19],
                len(entry.artifacts),
            )
        return entry, reused

    def _check_outputs(self, plan: BuildPlan, entry: CacheEntry) -> None:
        for dependency in plan.dependencies:
            address = entry.artifacts.get(dependency.name)
            if address is None:
                raise DependencyBuildError(
                    dependency.name, f"cache entry {entry.cache_key} has no output for it"
                )
            if not self._store.verify(address):
                raise DependencyBuildError(
                    dependency.name,
                    f"cached output {address} is missing from the artifact store "
                    "or fails its integrity check",
                )

    def _compile(self, plan: BuildPlan, config: BuildConfig) -> dict[str, str]:
        self._scratch_root.mkdir(parents=True, exist_ok=True)
        artifacts: dict[str, str] = {}
        with tempfile.TemporaryDirectory(prefix="deps-", dir=self._scratch_root) as tmp:
            scratch = Path(tmp)
            built: dict[str, Path] = {}
            for dependency in plan.dependencies:
                if self._cancel_event.is_set():
                    raise PipelineCancelledError(
                        "cancelled while compiling dependencies", stage_id=self.stage_id
                    )
                request = BuildRequest(
                    unit=dependency.name,
                    kind=BuildKind.DEPENDENCY,
                    version=dependency.version,
                    workdir=scratch / "work" / dependency.name,
                    output_path=scratch / "out" / dependency.name,
                    profile=config.profile,
                    features=dependency.features,
                    extra_flags=config.extra_flags,
                    inputs=dict(built),
                )
                logger.debug("Compiling %s %s", dependency.name, dependency.version)
                try:
                    output = self._toolchain.build(request)
                except ToolchainError as exc:
                    raise DependencyBuildError(dependency.name, str(exc)) from exc
                output = Path(output)
                if not output.is_file():
                    raise DependencyBuildError(
                        dependency.name, f"toolchain produced no output at {output}"
                    )
                built[dependency.name] = output
                artifacts[dependency.name] = self._store.store_file(
                    output, name=dependency.name
                ).content_address
        return artifacts

    # ------------------------------------------------------------------
    # Pipeline stage
    # ------------------------------------------------------------------

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        planned = run_context["stage_results"][PLAN]
        entry, reused = self.build(planned["plan"], planned["config"])
        return {
            "cache_key": entry.cache_key,
            "artifacts": entry.artifacts,
            "_entry": entry,
            "_reused": reused,
            "_artifact_refs": sorted(entry.artifacts.values()),
            "_details": {"cache_key": entry.cache_key, "cache_hit": reused},
        }
