"""Tests for the build monitor: ledger projection and Rich rendering."""

from __future__ import annotations

import sqlite3
from io import StringIO

from rich.console import Console

from layerforge.core.run_ledger import RunLedger
from layerforge.core.stage_machine import StageMachine
from layerforge.models.stages import PipelinePhase, StageState
from layerforge.monitor.projection import MonitorProjection
from layerforge.monitor.renderer import MonitorRenderer


def _pass(sm: StageMachine, run_id: str, stage_id: str, **kwargs) -> None:
    sm.transition(run_id, stage_id, StageState.RUNNING)
    sm.transition(run_id, stage_id, StageState.PASSED, **kwargs)


def _render(snapshot) -> str:
    console = Console(file=StringIO(), width=160, force_terminal=False, color_system=None)
    MonitorRenderer(console).print_snapshot(snapshot)
    return console.file.getvalue()


class TestMonitorProjection:
    def test_fresh_run_is_planning(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.phase == PipelinePhase.PLANNING
        assert snapshot.total_stages == 5
        assert snapshot.completed_count == 0
        assert snapshot.chain_valid is True

    def test_phase_follows_running_stage(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan")
        stage_machine.transition(run_id, "dependency_cache", StageState.RUNNING)
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.phase == PipelinePhase.DEPENDENCY_CACHING
        assert [s.stage_id for s in snapshot.running_stages] == ["dependency_cache"]

    def test_details_are_surfaced(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan", details={"fingerprint": "sha256:f1"})
        _pass(
            stage_machine, run_id, "dependency_cache",
            details={"cache_key": "sha256:k", "cache_hit": True},
            artifact_references=["sha256:a", "sha256:b"],
        )
        _pass(
            stage_machine, run_id, "external_integration",
            details={"commit": "a" * 40, "drifted_from": "b" * 40},
            artifact_references=["sha256:c"],
        )
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.fingerprint == "sha256:f1"
        assert snapshot.cache_hit is True
        assert snapshot.external_commit == "a" * 40
        assert snapshot.drifted_from == "b" * 40
        assert snapshot.artifact_count == 3

    def test_failure_is_projected(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "external_integration", StageState.RUNNING)
        stage_machine.transition(
            run_id, "external_integration", StageState.FAILED,
            details={"error": "cannot fetch repo", "error_type": "FetchError"},
        )
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.phase == PipelinePhase.FAILED
        assert [s.error for s in snapshot.failed_stages] == ["cannot fetch repo"]
        assert [s.stage_id for s in snapshot.blocked_stages] == ["assembly"]
        assert snapshot.blocked_stages[0].block_reason == "blocked by external_integration"

    def test_all_passed_is_done(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        for sid in ("plan", "dependency_cache", "application_build", "external_integration"):
            _pass(stage_machine, run_id, sid)
        _pass(stage_machine, run_id, "assembly", details={"image_id": "sha256:img"})
        snapshot = MonitorProjection(ledger).snapshot(run_id)
        assert snapshot.phase == PipelinePhase.DONE
        assert snapshot.image_id == "sha256:img"

    def test_tampering_marks_chain_invalid(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan", details={"fingerprint": "sha256:f1"})
        conn = sqlite3.connect(str(ledger.db_path))
        conn.execute("UPDATE run_ledger SET details_json = '{\"fingerprint\": \"sha256:evil\"}'")
        conn.commit()
        conn.close()
        assert MonitorProjection(ledger).snapshot(run_id).chain_valid is False


class TestMonitorRenderer:
    def test_renders_stage_names_and_states(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        _pass(stage_machine, run_id, "plan", details={"fingerprint": "sha256:f1"})
        out = _render(MonitorProjection(ledger).snapshot(run_id))
        assert "layerforge build monitor" in out
        assert "Fingerprinting Planner" in out
        assert "Runtime Image Assembler" in out
        assert "PASSED" in out
        assert "NOT STARTED" in out

    def test_error_text_with_brackets_renders(self, ledger: RunLedger, stage_machine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "plan", StageState.RUNNING)
        stage_machine.transition(
            run_id, "plan", StageState.FAILED, details={"error": "error[E0425]: [/bad] tag"}
        )
        out = _render(MonitorProjection(ledger).snapshot(run_id))
        assert "error[E0425]" in out
        assert "FAILED" in out

    def test_chain_verification_messages(self):
        console = Console(file=StringIO(), width=120, color_system=None)
        renderer = MonitorRenderer(console)
        renderer.print_chain_verification("run-1", True)
        renderer.print_chain_verification("run-2", False)
        out = console.file.getvalue()
        assert "Hash chain for run run-1 is valid." in out
        assert "Hash chain for run run-2 is BROKEN!" in out
