"""Pipeline orchestrator, the central coordinator for layerforge runs.

``BuildPipeline`` wires together the RunLedger, StageMachine,
PrerequisiteGraph, the artifact stores and cache indexes of both toolchain
scopes, and the five stages. Execution follows the stage DAG:

    plan -> dependency_cache -> application_build --+
                                                    +--> assembly
    external_integration ---------------------------+

The primary chain and the external branch run concurrently on a thread pool
and join before assembly. Any stage failure is fatal: the failing stage is
recorded FAILED, its dependents BLOCKED, the other branch is cancelled at its
next stage boundary and no image is published.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from layerforge.config import settings
from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.errors import PipelineCancelledError, PipelineError
from layerforge.core.hasher import compute_output_hash
from layerforge.core.prerequisite_graph import PrerequisiteGraph
from layerforge.core.run_ledger import RunLedger
from layerforge.core.stage_machine import StageMachine
from layerforge.models.config import PipelineConfig
from layerforge.models.ledger import LedgerEntry
from layerforge.models.pipeline import PipelineResult
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import (
    APPLICATION_BUILD,
    ASSEMBLY,
    DEFAULT_STAGE_DEFINITIONS,
    DEPENDENCY_CACHE,
    EXTERNAL_INTEGRATION,
    PLAN,
    PipelinePhase,
    StageDefinition,
    StageState,
)
from layerforge.stages import (
    BaseStage,
    DependencyCacheBuilder,
    ExternalComponentIntegrator,
    FingerprintPlanner,
    PrimaryArtifactBuilder,
    RuntimeImageAssembler,
)
from layerforge.toolchain import (
    CommandInstaller,
    CommandToolchain,
    GitFetcher,
    PackageInstaller,
    RecordingInstaller,
    SourceFetcher,
    Toolchain,
)

logger = logging.getLogger(__name__)

PRIMARY_CHAIN = (PLAN, DEPENDENCY_CACHE, APPLICATION_BUILD)
EXTERNAL_BRANCH = (EXTERNAL_INTEGRATION,)


def derive_phase(
    states: Mapping[str, StageState],
    definitions: Iterable[StageDefinition] = DEFAULT_STAGE_DEFINITIONS,
) -> PipelinePhase:
    """Whole-pipeline phase from per-stage states."""
    values = set(states.values())
    if StageState.FAILED in values or StageState.BLOCKED in values:
        return PipelinePhase.FAILED
    if StageState.CANCELLED in values:
        return PipelinePhase.CANCELLED
    ordered = sorted(definitions, key=lambda d: d.ordinal)
    if ordered and all(states.get(d.stage_id) == StageState.PASSED for d in ordered):
        return PipelinePhase.DONE
    for target in (StageState.RUNNING, StageState.NOT_STARTED):
        for definition in ordered:
            if states.get(definition.stage_id, StageState.NOT_STARTED) == target:
                return definition.phase
    return PipelinePhase.PLANNING


class BuildPipeline:
    """Runs a ``BuildRecipe`` through the five stages.

    Parameters
    ----------
    recipe:
        The build recipe.
    config:
        Storage locations and scheduling knobs. Defaults to the settings.
    toolchain, external_toolchain:
        Toolchains of the primary and external scopes. Default to
        ``CommandToolchain`` instances built from the recipe; they must be
        distinct objects.
    fetcher:
        Source fetcher for the external component (default ``GitFetcher``).
    installer:
        Runtime package installer. Defaults to ``CommandInstaller`` when the
        recipe names an install command and ``RecordingInstaller`` otherwise.
    run_id:
        Explicit run identifier; generated when omitted.
    """

    def __init__(
        self,
        recipe: BuildRecipe,
        config: PipelineConfig | None = None,
        *,
        toolchain: Toolchain | None = None,
        external_toolchain: Toolchain | None = None,
        fetcher: SourceFetcher | None = None,
        installer: PackageInstaller | None = None,
        run_id: str | None = None,
    ) -> None:
        self.recipe = recipe
        self.config = config or PipelineConfig.from_settings(settings)
        timeout = self.config.command_timeout_seconds

        if toolchain is not None and toolchain is external_toolchain:
            raise ValueError("primary and external scopes need distinct toolchain instances")
        self._toolchain = toolchain or CommandToolchain(recipe.toolchain, timeout=timeout)
        self._external_toolchain = external_toolchain or CommandToolchain(
            recipe.external.toolchain, timeout=timeout
        )
        self._fetcher = fetcher or GitFetcher(timeout=timeout)
        if installer is None:
            installer = (
                CommandInstaller(list(recipe.installer.command), timeout=timeout)
                if recipe.installer.command
                else RecordingInstaller()
            )
        self._installer = installer

        # Core subsystems
        self.ledger = RunLedger(self.config.ledger_db_path)
        self.graph = PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)
        self.stage_machine = StageMachine(self.ledger, self.graph)
        self.artifact_store = ContentAddressedStore(self.config.artifact_store_path)
        self.dependency_cache = DependencyCacheStore(
            self.config.cache_db_path,
            claim_timeout=self.config.cache_claim_timeout_seconds,
            poll_interval=self.config.cache_poll_interval_seconds,
        )
        external_root = self.config.external_cache_path
        self.external_store = ContentAddressedStore(external_root / "artifacts")
        self.external_cache = DependencyCacheStore(
            external_root / "cache.db",
            claim_timeout=self.config.cache_claim_timeout_seconds,
            poll_interval=self.config.cache_poll_interval_seconds,
        )

        # Run state
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_id = run_id or f"lf-{ts}-{uuid.uuid4().hex[:6]}"
        self._cancel_event = threading.Event()
        self._error_lock = threading.Lock()
        self._first_error: BaseException | None = None

        self.stages: dict[str, BaseStage] = self._build_stages()

    def _build_stages(self) -> dict[str, BaseStage]:
        scratch = self.config.workspace_path / "scratch"
        recipe = self.recipe
        stages: list[BaseStage] = [
            FingerprintPlanner(),
            DependencyCacheBuilder(
                self._toolchain,
                self.artifact_store,
                self.dependency_cache,
                scratch / "dependencies",
                cancel_event=self._cancel_event,
            ),
            PrimaryArtifactBuilder(
                self._toolchain, self.artifact_store, scratch / "application"
            ),
            ExternalComponentIntegrator(
                self._fetcher,
                self._external_toolchain,
                self.external_store,
                self.external_cache,
                self.config.external_cache_path / "scratch",
                binary=recipe.external.binary,
                profile=recipe.external.profile,
                retain_source=recipe.image.retain_external_source is not None,
                ledger=self.ledger,
                cancel_event=self._cancel_event,
            ),
            RuntimeImageAssembler(
                {
                    APPLICATION_BUILD: self.artifact_store,
                    EXTERNAL_INTEGRATION: self.external_store,
                },
                self._installer,
                self.config.image_output_path,
                context_dir=recipe.context_dir,
                build_packages=recipe.build.packages,
                exclude=[self.config.workspace_path],
                cancel_event=self._cancel_event,
            ),
        ]
        return {stage.stage_id: stage for stage in stages}

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation; safe to call from any thread."""
        if not self._cancel_event.is_set():
            logger.warning("Cancelling run %s: %s", self.run_id, reason)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def run(self) -> PipelineResult:
        """Execute the whole pipeline and return its result.

        Raises the ``PipelineError`` of the first failing stage, or
        ``PipelineCancelledError`` when cancelled before publishing.
        """
        self.stage_machine.initialize_run(self.run_id)
        context: dict[str, Any] = {
            "run_id": self.run_id,
            "recipe": self.recipe,
            "stage_definitions": {d.stage_id: d for d in DEFAULT_STAGE_DEFINITIONS},
            "cancel_event": self._cancel_event,
            "stage_results": {},
        }
        logger.info("Run %s started for %s", self.run_id, self.recipe.name)

        try:
            workers = max(1, self.config.max_parallel_branches)
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="layerforge"
            ) as pool:
                futures = [
                    pool.submit(self._run_branch, context, PRIMARY_CHAIN),
                    pool.submit(self._run_branch, context, EXTERNAL_BRANCH),
                ]
                for future in futures:
                    future.exception()  # join; errors are collected below

            if self._first_error is None and not self._cancel_event.is_set():
                self._execute_stage(ASSEMBLY, context)

            if self._first_error is not None:
                self._abort(str(self._first_error))
                raise self._first_error
            if self._cancel_event.is_set():
                self._abort("cancelled")
                raise PipelineCancelledError(f"run {self.run_id} was cancelled")
        finally:
            self._discard_retained_source(context)

        result = self._result(context)
        logger.info("Run %s done: image %s", self.run_id, result.image.image_id[:19])
        return result

    def _run_branch(self, context: dict[str, Any], stage_ids: Iterable[str]) -> None:
        for stage_id in stage_ids:
            if self._cancel_event.is_set():
                return
            try:
                self._execute_stage(stage_id, context)
            except BaseException as exc:
                with self._error_lock:
                    if self._first_error is None and not isinstance(
                        exc, PipelineCancelledError
                    ):
                        self._first_error = exc
                self._cancel_event.set()
                raise

    def _abort(self, reason: str) -> None:
        cancelled = self.stage_machine.cancel_pending(self.run_id, reason)
        if cancelled:
            logger.info("Run %s: cancelled %s", self.run_id, ", ".join(cancelled))

    def execute_stage(self, stage_id: str, context: dict[str, Any]) -> dict[str, Any]:
        """Execute one stage with ledger bookkeeping.

        Lifecycle:
        1. Transition to RUNNING (prerequisites checked by the state machine)
        2. ``stage.run_stage(context)``
        3. Transition to PASSED, FAILED or CANCELLED
        """
        return self._execute_stage(stage_id, context)

    def _execute_stage(self, stage_id: str, context: dict[str, Any]) -> dict[str, Any]:
        stage = self.stages[stage_id]
        input_hash = stage.compute_input_hash(context)
        self.stage_machine.transition(
            self.run_id, stage_id, StageState.RUNNING, input_hash=input_hash
        )

        try:
            result = stage.run_stage(context)
        except PipelineCancelledError as exc:
            self.stage_machine.transition(
                self.run_id,
                stage_id,
                StageState.CANCELLED,
                input_hash=input_hash,
                details={"reason": str(exc)},
            )
            raise
        except Exception as exc:
            self.stage_machine.transition(
                self.run_id,
                stage_id,
                StageState.FAILED,
                input_hash=input_hash,
                output_hash=compute_output_hash(stage_id, {"error": str(exc)}),
                details={"error": str(exc), "error_type": type(exc).__name__},
            )
            if not isinstance(exc, PipelineError):
                raise stage.wrap_error(exc) from exc
            raise

        self.stage_machine.transition(
            self.run_id,
            stage_id,
            StageState.PASSED,
            input_hash=input_hash,
            output_hash=result["_output_hash"],
            artifact_references=result.get("_artifact_refs", []),
            details=result.get("_details", {}),
        )
        return result

    @staticmethod
    def _discard_retained_source(context: dict[str, Any]) -> None:
        external = context["stage_results"].get(EXTERNAL_INTEGRATION)
        if external is None:
            return
        source = external["_component"].source_path
        if source is not None:
            shutil.rmtree(source.parent, ignore_errors=True)

    def _result(self, context: dict[str, Any]) -> PipelineResult:
        results = context["stage_results"]
        component = results[EXTERNAL_INTEGRATION]["_component"]
        states = self.get_states()
        return PipelineResult(
            run_id=self.run_id,
            phase=derive_phase(states),
            plan=results[PLAN]["plan"],
            dependency_cache_key=results[DEPENDENCY_CACHE]["cache_key"],
            dependency_cache_hit=results[DEPENDENCY_CACHE]["_reused"],
            primary_artifact=results[APPLICATION_BUILD]["_artifact"],
            external_artifact=component.artifact,
            external_cache_hit=component.reused,
            resolution=component.resolution,
            drifted_from=component.drifted_from,
            image=results[ASSEMBLY]["_image"],
            stage_states=states,
        )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def phase(self) -> PipelinePhase:
        return derive_phase(self.get_states())

    def get_states(self) -> dict[str, StageState]:
        """Return current state of all stages."""
        return self.stage_machine.get_all_states(self.run_id)

    def get_stage_state(self, stage_id: str) -> StageState:
        return self.stage_machine.get_current_state(self.run_id, stage_id)

    def get_run_entries(self) -> list[LedgerEntry]:
        """Return all ledger entries for the current run."""
        return self.ledger.get_run_entries(self.run_id)

    def verify_chain(self) -> bool:
        """Verify the hash chain integrity of the current run's ledger."""
        return self.ledger.verify_chain(self.run_id)
