"""Adversarial tests: corrupted or forged cache state is never trusted."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing

import pytest

from layerforge.core.errors import DependencyBuildError
from layerforge.models.stages import StageState


def _blob_path(store, address: str):
    digest = address.removeprefix("sha256:")
    return store.base_path / digest[:2] / digest[2:4] / f"{digest}.dat"


@pytest.fixture
def warm_cache(make_pipeline):
    """Run once so the dependency cache holds a published entry."""
    pipeline, toolchain, external, fetcher = make_pipeline()
    pipeline.run()
    (entry,) = pipeline.dependency_cache.entries()
    return pipeline, entry, (toolchain, external, fetcher)


def _rerun(make_pipeline, collaborators):
    toolchain, external, fetcher = collaborators
    pipeline, *_ = make_pipeline(
        toolchain=toolchain, external_toolchain=external, fetcher=fetcher
    )
    return pipeline


class TestCacheIntegrity:
    def test_corrupted_cached_output_is_rejected(self, make_pipeline, warm_cache):
        first, entry, collaborators = warm_cache
        _blob_path(first.artifact_store, entry.artifacts["gamma"]).write_bytes(b"poisoned")

        second = _rerun(make_pipeline, collaborators)
        with pytest.raises(DependencyBuildError, match="integrity") as excinfo:
            second.run()
        assert excinfo.value.dependency == "gamma"
        assert second.get_stage_state("application_build") == StageState.BLOCKED

    def test_deleted_cached_output_is_rejected(self, make_pipeline, warm_cache):
        first, entry, collaborators = warm_cache
        _blob_path(first.artifact_store, entry.artifacts["beta"]).unlink()

        second = _rerun(make_pipeline, collaborators)
        with pytest.raises(DependencyBuildError) as excinfo:
            second.run()
        assert excinfo.value.dependency == "beta"

    def test_forged_entry_missing_a_unit(self, make_pipeline, warm_cache):
        first, entry, collaborators = warm_cache
        forged = {k: v for k, v in entry.artifacts.items() if k != "alpha"}
        with closing(sqlite3.connect(str(first.config.cache_db_path))) as conn:
            conn.execute(
                "UPDATE cache_entries SET artifacts_json = ? WHERE cache_key = ?",
                (json.dumps(forged), entry.cache_key),
            )
            conn.commit()

        second = _rerun(make_pipeline, collaborators)
        with pytest.raises(DependencyBuildError, match="no output") as excinfo:
            second.run()
        assert excinfo.value.dependency == "alpha"

    def test_forged_entry_pointing_at_foreign_blob(self, make_pipeline, warm_cache):
        first, entry, collaborators = warm_cache
        forged = dict(entry.artifacts, gamma="sha256:" + "0" * 64)
        with closing(sqlite3.connect(str(first.config.cache_db_path))) as conn:
            conn.execute(
                "UPDATE cache_entries SET artifacts_json = ? WHERE cache_key = ?",
                (json.dumps(forged), entry.cache_key),
            )
            conn.commit()

        second = _rerun(make_pipeline, collaborators)
        with pytest.raises(DependencyBuildError, match="missing"):
            second.run()
