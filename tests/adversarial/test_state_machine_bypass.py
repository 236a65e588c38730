"""Adversarial tests: attempts to push stages past the state machine.

Every attempt to start a stage early, restart a finished one or resume a
failed or cancelled run must be refused, and refusals must leave no trace
in the ledger.
"""

from __future__ import annotations

import pytest

from layerforge.core.prerequisite_graph import PrerequisiteNotMetError
from layerforge.core.run_ledger import RunLedger
from layerforge.core.stage_machine import InvalidTransitionError, StageMachine
from layerforge.models.stages import DEFAULT_STAGE_DEFINITIONS, StageState


def _pass(sm: StageMachine, run_id: str, stage_id: str) -> None:
    sm.transition(run_id, stage_id, StageState.RUNNING)
    sm.transition(run_id, stage_id, StageState.PASSED)


class TestPrematureStart:
    def test_assembly_before_external_branch(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        for sid in ("plan", "dependency_cache", "application_build"):
            _pass(stage_machine, run_id, sid)
        with pytest.raises(PrerequisiteNotMetError, match="external_integration"):
            stage_machine.transition(run_id, "assembly", StageState.RUNNING)

    def test_application_while_dependencies_running(
        self, stage_machine: StageMachine, run_id: str
    ):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan")
        stage_machine.transition(run_id, "dependency_cache", StageState.RUNNING)
        with pytest.raises(PrerequisiteNotMetError, match="running"):
            stage_machine.transition(run_id, "application_build", StageState.RUNNING)

    def test_skipping_running_is_refused(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "external_integration", StageState.PASSED)

    def test_refusal_leaves_no_ledger_entry(
        self, ledger: RunLedger, stage_machine: StageMachine, run_id: str
    ):
        stage_machine.initialize_run(run_id)
        before = len(ledger.get_run_entries(run_id))
        with pytest.raises(PrerequisiteNotMetError):
            stage_machine.transition(run_id, "assembly", StageState.RUNNING)
        assert len(ledger.get_run_entries(run_id)) == before

    def test_other_runs_do_not_satisfy_prerequisites(self, stage_machine: StageMachine):
        stage_machine.initialize_run("run-a")
        _pass(stage_machine, "run-a", "plan")
        stage_machine.initialize_run("run-b")
        with pytest.raises(PrerequisiteNotMetError):
            stage_machine.transition("run-b", "dependency_cache", StageState.RUNNING)


class TestNoResurrection:
    def test_passed_stage_cannot_rerun(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan")
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "plan", StageState.RUNNING)

    def test_blocked_stage_stays_blocked(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan")
        stage_machine.transition(run_id, "dependency_cache", StageState.RUNNING)
        stage_machine.transition(run_id, "dependency_cache", StageState.FAILED)
        assert stage_machine.get_current_state(run_id, "application_build") == StageState.BLOCKED
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "application_build", StageState.RUNNING)

    def test_cancelled_run_cannot_resume(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.cancel_pending(run_id, "operator abort")
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "plan", StageState.RUNNING)

    def test_fresh_machine_rebuilds_terminal_states(
        self, ledger: RunLedger, stage_machine: StageMachine, graph, run_id: str
    ):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "plan", StageState.RUNNING)
        stage_machine.transition(run_id, "plan", StageState.FAILED)

        # A second process reading the same ledger sees the same outcome.
        other = StageMachine(ledger, graph)
        assert other.get_current_state(run_id, "plan") == StageState.FAILED
        with pytest.raises(InvalidTransitionError):
            other.transition(run_id, "plan", StageState.RUNNING)

    def test_finished_pipeline_rejects_replay(self, make_pipeline):
        pipeline, *_ = make_pipeline()
        pipeline.run()
        for definition in DEFAULT_STAGE_DEFINITIONS:
            with pytest.raises(InvalidTransitionError):
                pipeline.stage_machine.transition(
                    pipeline.run_id, definition.stage_id, StageState.RUNNING
                )
        assert pipeline.verify_chain() is True
