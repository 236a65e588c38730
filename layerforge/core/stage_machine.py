"""Deterministic stage state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Prerequisites checked before RUNNING
- Cascade blocking on failure
- Every transition recorded in the Run Ledger

Transitions are serialized per machine so that the primary chain and the
external branch can record into the same run concurrently.
"""

from __future__ import annotations

import threading
from typing import Any

from layerforge.core.prerequisite_graph import PrerequisiteGraph, PrerequisiteNotMetError
from layerforge.core.run_ledger import RunLedger
from layerforge.models.ledger import LedgerEntry
from layerforge.models.stages import VALID_TRANSITIONS, StageState


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class StageMachine:
    """Enforces the stage state machine with prerequisite checking.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    graph:
        The prerequisite graph for dependency checking.
    """

    def __init__(self, ledger: RunLedger, graph: PrerequisiteGraph) -> None:
        self._ledger = ledger
        self._graph = graph
        self._lock = threading.RLock()
        # In-memory state cache: run_id -> {stage_id -> StageState}
        self._states: dict[str, dict[str, StageState]] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def initialize_run(self, run_id: str) -> dict[str, StageState]:
        """Initialize all stages to NOT_STARTED for a new run."""
        with self._lock:
            states = {sid: StageState.NOT_STARTED for sid in self._graph.stage_ids}
            self._states[run_id] = states
            return dict(states)

    def get_current_state(self, run_id: str, stage_id: str) -> StageState:
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            return self._states[run_id].get(stage_id, StageState.NOT_STARTED)

    def get_all_states(self, run_id: str) -> dict[str, StageState]:
        """Return a snapshot of all stage states for a run."""
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            return dict(self._states[run_id])

    def _rebuild_state(self, run_id: str) -> None:
        """Rebuild in-memory state from the ledger."""
        states = {sid: StageState.NOT_STARTED for sid in self._graph.stage_ids}
        for entry in self._ledger.get_run_entries(run_id):
            try:
                states[entry.stage_id] = StageState(entry.to_state)
            except ValueError:
                pass
        self._states[run_id] = states

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        stage_id: str,
        target_state: StageState,
        *,
        input_hash: str = "",
        output_hash: str = "",
        artifact_references: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Transition a stage to a new state, recording in the ledger.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is RUNNING, prerequisites are met.
        3. If transition is to FAILED, cascade-block dependents.

        Returns the sealed LedgerEntry.
        """
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            states = self._states[run_id]
            current = states.get(stage_id, StageState.NOT_STARTED)

            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {stage_id} from {current.value} to "
                    f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
                )

            if target_state == StageState.RUNNING and not self._graph.are_prerequisites_met(
                stage_id, states
            ):
                reasons = self._graph.get_blocking_reasons(stage_id, states)
                raise PrerequisiteNotMetError(
                    f"Cannot start {stage_id}: prerequisites not met. "
                    f"Blocked by: {'; '.join(reasons)}"
                )

            sealed = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    stage_id=stage_id,
                    state_transition=f"{current.value}->{target_state.value}",
                    input_hash=input_hash,
                    output_hash=output_hash,
                    artifact_references=artifact_references or [],
                    details=details or {},
                )
            )
            states[stage_id] = target_state

            if target_state == StageState.FAILED:
                for blocked_id in self._graph.cascade_block(stage_id, states):
                    self._ledger.append(
                        LedgerEntry(
                            run_id=run_id,
                            stage_id=blocked_id,
                            state_transition=(
                                f"{StageState.NOT_STARTED.value}->{StageState.BLOCKED.value}"
                            ),
                            details={"blocked_by": stage_id},
                        )
                    )

            return sealed

    def cancel_pending(self, run_id: str, reason: str) -> list[str]:
        """Move every NOT_STARTED stage of a run to CANCELLED."""
        cancelled: list[str] = []
        with self._lock:
            for stage_id, state in self.get_all_states(run_id).items():
                if state == StageState.NOT_STARTED:
                    self.transition(
                        run_id,
                        stage_id,
                        StageState.CANCELLED,
                        details={"reason": reason},
                    )
                    cancelled.append(stage_id)
        return cancelled

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    def can_start(self, run_id: str, stage_id: str) -> tuple[bool, list[str]]:
        """Check if a stage can transition to RUNNING.

        Returns (can_start, blocking_reasons).
        """
        states = self.get_all_states(run_id)
        current = states.get(stage_id, StageState.NOT_STARTED)
        if current != StageState.NOT_STARTED:
            return False, [f"Stage is currently {current.value}, not not_started"]

        if not self._graph.are_prerequisites_met(stage_id, states):
            return False, self._graph.get_blocking_reasons(stage_id, states)

        return True, []
