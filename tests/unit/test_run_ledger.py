"""Tests for RunLedger: append-only, hash-chained, concurrent appends."""

from __future__ import annotations

import threading

from layerforge.core.run_ledger import RunLedger
from layerforge.models.ledger import LedgerEntry


def _entry(run_id: str, stage_id: str = "plan", transition: str = "not_started->running", **kw):
    return LedgerEntry(run_id=run_id, stage_id=stage_id, state_transition=transition, **kw)


class TestRunLedger:
    def test_append_sets_entry_hash(self, ledger: RunLedger, run_id: str):
        sealed = ledger.append(_entry(run_id))
        assert sealed.entry_hash != ""
        assert sealed.previous_entry_hash == ""

    def test_hash_chain_links(self, ledger: RunLedger, run_id: str):
        first = ledger.append(_entry(run_id))
        second = ledger.append(_entry(run_id, transition="running->passed"))
        assert second.previous_entry_hash == first.entry_hash

    def test_chains_are_per_run(self, ledger: RunLedger):
        ledger.append(_entry("run-a"))
        other = ledger.append(_entry("run-b"))
        assert other.previous_entry_hash == ""

    def test_verify_chain_valid(self, ledger: RunLedger, run_id: str):
        for transition in ("not_started->running", "running->passed"):
            ledger.append(_entry(run_id, transition=transition))
        assert ledger.verify_chain(run_id) is True

    def test_verify_chain_empty(self, ledger: RunLedger):
        assert ledger.verify_chain("no-such-run") is True

    def test_details_round_trip(self, ledger: RunLedger, run_id: str):
        ledger.append(
            _entry(
                run_id,
                stage_id="external_integration",
                transition="running->passed",
                details={"commit": "a" * 40, "cache_hit": False},
                artifact_references=["sha256:abc"],
            )
        )
        stored = ledger.get_latest(run_id)
        assert stored.details == {"commit": "a" * 40, "cache_hit": False}
        assert stored.artifact_references == ["sha256:abc"]
        assert stored.to_state == "passed"
        assert ledger.verify_chain(run_id)

    def test_get_stage_history(self, ledger: RunLedger, run_id: str):
        ledger.append(_entry(run_id, "plan"))
        ledger.append(_entry(run_id, "external_integration"))
        ledger.append(_entry(run_id, "plan", "running->passed"))
        history = ledger.get_stage_history(run_id, "plan")
        assert [e.state_transition for e in history] == [
            "not_started->running",
            "running->passed",
        ]

    def test_get_all_run_ids_most_recent_first(self, ledger: RunLedger):
        ledger.append(_entry("run-1"))
        ledger.append(_entry("run-2"))
        assert ledger.get_all_run_ids() == ["run-2", "run-1"]

    def test_iter_stage_entries_newest_first(self, ledger: RunLedger):
        ledger.append(_entry("run-1", "external_integration", details={"commit": "old"}))
        ledger.append(_entry("run-2", "external_integration", details={"commit": "new"}))
        ledger.append(_entry("run-2", "plan"))
        commits = [e.details["commit"] for e in ledger.iter_stage_entries("external_integration")]
        assert commits == ["new", "old"]

    def test_concurrent_appends_keep_one_chain(self, ledger: RunLedger, run_id: str):
        def append_many(stage_id: str) -> None:
            for _ in range(10):
                ledger.append(_entry(run_id, stage_id))

        threads = [
            threading.Thread(target=append_many, args=(sid,))
            for sid in ("plan", "external_integration")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger.get_run_entries(run_id)) == 20
        assert ledger.verify_chain(run_id) is True
