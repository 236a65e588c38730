"""MonitorProjection: a read-only view over the RunLedger.

The build monitor is a PROJECTION of the run ledger. It does not compute
truth, it displays it. Every call re-reads from the ledger and the
projection never keeps state of its own.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from layerforge.core.orchestrator import derive_phase
from layerforge.core.run_ledger import LedgerIntegrityError, RunLedger
from layerforge.models.ledger import LedgerEntry
from layerforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    PipelinePhase,
    StageDefinition,
    StageState,
)


class StageStatus(BaseModel):
    """Point-in-time status of a single pipeline stage, derived from the ledger."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    state: StageState = StageState.NOT_STARTED
    entered_at: datetime | None = None
    block_reason: str | None = None
    error: str | None = None
    details: dict[str, Any] = {}
    artifact_refs: list[str] = []


class MonitorSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of a pipeline run.

    Computed fresh on every ``snapshot()`` call and never persisted.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline_version: str = ""
    phase: PipelinePhase = PipelinePhase.PLANNING
    stages: list[StageStatus] = []
    artifact_count: int = 0
    chain_valid: bool = True
    fingerprint: str | None = None
    cache_hit: bool | None = None
    external_commit: str | None = None
    drifted_from: str | None = None
    image_id: str | None = None
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == StageState.PASSED)

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.FAILED]

    @property
    def blocked_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.BLOCKED]

    @property
    def running_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.RUNNING]


class MonitorProjection:
    """Read-only projection over the RunLedger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    stage_definitions:
        Stage definitions for display names and ordering.
        Defaults to ``DEFAULT_STAGE_DEFINITIONS``.
    """

    def __init__(
        self,
        ledger: RunLedger,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> None:
        self._ledger = ledger
        definitions = stage_definitions or DEFAULT_STAGE_DEFINITIONS
        self._stage_defs = sorted(definitions, key=lambda sd: sd.ordinal)

    def snapshot(self, run_id: str) -> MonitorSnapshot:
        """Produce a point-in-time snapshot of the run by replaying its entries."""
        entries = self._ledger.get_run_entries(run_id)
        replayed = self._replay(entries)

        stages = [
            StageStatus(
                stage_id=sd.stage_id,
                display_name=sd.display_name,
                **replayed.get(sd.stage_id, {}),
            )
            for sd in self._stage_defs
        ]
        states = {s.stage_id: s.state for s in stages}
        merged: dict[str, Any] = {}
        for stage in stages:
            merged.update(stage.details)

        return MonitorSnapshot(
            run_id=run_id,
            pipeline_version=entries[-1].pipeline_version if entries else "",
            phase=derive_phase(states, self._stage_defs),
            stages=stages,
            artifact_count=len({ref for e in entries for ref in e.artifact_references}),
            chain_valid=self._check_chain_valid(run_id),
            fingerprint=merged.get("fingerprint"),
            cache_hit=self._stage_detail(stages, "dependency_cache", "cache_hit"),
            external_commit=merged.get("commit"),
            drifted_from=merged.get("drifted_from"),
            image_id=merged.get("image_id"),
            last_updated=entries[-1].timestamp_utc if entries else datetime.now(timezone.utc),
        )

    @staticmethod
    def _stage_detail(stages: list[StageStatus], stage_id: str, key: str) -> Any:
        for stage in stages:
            if stage.stage_id == stage_id:
                return stage.details.get(key)
        return None

    @staticmethod
    def _replay(entries: list[LedgerEntry]) -> dict[str, dict[str, Any]]:
        """Replay ledger entries into per-stage status fields."""
        result: dict[str, dict[str, Any]] = {}
        for entry in entries:
            info = result.setdefault(entry.stage_id, {"artifact_refs": [], "details": {}})
            try:
                state = StageState(entry.to_state)
            except ValueError:
                continue
            info["state"] = state
            info["entered_at"] = entry.timestamp_utc
            info["artifact_refs"].extend(entry.artifact_references)
            info["details"] = {**info["details"], **entry.details}
            if state == StageState.BLOCKED:
                info["block_reason"] = f"blocked by {entry.details.get('blocked_by', 'upstream')}"
            elif state == StageState.CANCELLED:
                info["block_reason"] = entry.details.get("reason", "cancelled")
            elif state == StageState.FAILED:
                info["error"] = entry.details.get("error")
        return result

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
