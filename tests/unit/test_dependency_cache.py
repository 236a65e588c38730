"""Tests for the Dependency Cache Builder."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from conftest import FakeToolchain
from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.errors import DependencyBuildError, PipelineCancelledError
from layerforge.core.manifest_loader import load_manifest
from layerforge.models.manifest import BuildConfig
from layerforge.stages.dependency_cache import DependencyCacheBuilder
from layerforge.stages.planner import FingerprintPlanner
from layerforge.toolchain.protocols import BuildKind


@pytest.fixture
def plan(project_dir: Path):
    return FingerprintPlanner().plan(load_manifest(project_dir), BuildConfig())


def _builder(toolchain, store, cache, tmp_dir: Path, **kwargs) -> DependencyCacheBuilder:
    return DependencyCacheBuilder(toolchain, store, cache, tmp_dir / "scratch", **kwargs)


class TestDependencyCacheBuilder:
    def test_miss_compiles_closure_in_order(
        self, plan, artifact_store: ContentAddressedStore, cache_store: DependencyCacheStore,
        tmp_dir: Path,
    ):
        toolchain = FakeToolchain()
        entry, reused = _builder(toolchain, artifact_store, cache_store, tmp_dir).build(
            plan, BuildConfig()
        )
        assert reused is False
        assert [r.unit for r in toolchain.requests] == ["gamma", "alpha", "beta"]
        assert all(r.kind == BuildKind.DEPENDENCY for r in toolchain.requests)
        assert set(entry.artifacts) == {"gamma", "alpha", "beta"}
        assert all(artifact_store.verify(a) for a in entry.artifacts.values())

    def test_already_built_units_are_inputs(
        self, plan, artifact_store, cache_store, tmp_dir: Path
    ):
        toolchain = FakeToolchain()
        _builder(toolchain, artifact_store, cache_store, tmp_dir).build(plan, BuildConfig())
        inputs = {r.unit: sorted(r.inputs) for r in toolchain.requests}
        assert inputs == {"gamma": [], "alpha": ["gamma"], "beta": ["alpha", "gamma"]}

    def test_hit_compiles_nothing(self, plan, artifact_store, cache_store, tmp_dir: Path):
        first = FakeToolchain()
        entry, _ = _builder(first, artifact_store, cache_store, tmp_dir).build(plan, BuildConfig())

        second = FakeToolchain()
        again, reused = _builder(second, artifact_store, cache_store, tmp_dir).build(
            plan, BuildConfig()
        )
        assert reused is True
        assert second.build_count == 0
        assert again.artifacts == entry.artifacts

    def test_profile_and_flags_select_separate_entries(
        self, plan, artifact_store, cache_store, tmp_dir: Path
    ):
        toolchain = FakeToolchain()
        builder = _builder(toolchain, artifact_store, cache_store, tmp_dir)
        release, _ = builder.build(plan, BuildConfig())
        debug, reused = builder.build(plan, BuildConfig(profile="debug", extra_flags="-g"))
        assert reused is False
        assert release.cache_key != debug.cache_key
        assert toolchain.build_count == 6

    def test_failing_dependency_names_it(self, plan, artifact_store, cache_store, tmp_dir: Path):
        toolchain = FakeToolchain(fail_on={"alpha"})
        with pytest.raises(DependencyBuildError) as excinfo:
            _builder(toolchain, artifact_store, cache_store, tmp_dir).build(plan, BuildConfig())
        assert excinfo.value.dependency == "alpha"
        assert excinfo.value.stage_id == "dependency_cache"
        assert cache_store.entries() == []
        # beta is never attempted after alpha fails
        assert "beta" not in toolchain.builds

    def test_scratch_space_is_discarded(self, plan, artifact_store, cache_store, tmp_dir: Path):
        _builder(FakeToolchain(), artifact_store, cache_store, tmp_dir).build(plan, BuildConfig())
        assert list((tmp_dir / "scratch").iterdir()) == []

    def test_cancel_between_units(self, plan, artifact_store, cache_store, tmp_dir: Path):
        cancel = threading.Event()
        toolchain = FakeToolchain(on_build=lambda request: cancel.set())
        builder = _builder(toolchain, artifact_store, cache_store, tmp_dir, cancel_event=cancel)
        with pytest.raises(PipelineCancelledError):
            builder.build(plan, BuildConfig())
        assert toolchain.build_count == 1
        assert cache_store.lookup(builder.cache_key(plan, BuildConfig()).digest) is None

    def test_concurrent_invocations_build_once(
        self, plan, artifact_store, cache_store, tmp_dir: Path
    ):
        toolchain = FakeToolchain(delay=0.02)

        def run(_):
            return _builder(toolchain, artifact_store, cache_store, tmp_dir).build(
                plan, BuildConfig()
            )

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(run, range(4)))

        assert toolchain.builds == {"gamma": 1, "alpha": 1, "beta": 1}
        assert len({entry.cache_key for entry, _ in results}) == 1
        assert sum(not reused for _, reused in results) == 1

    def test_reused_entry_with_missing_output_is_an_error(
        self, plan, artifact_store, cache_store, tmp_dir: Path
    ):
        entry, _ = _builder(FakeToolchain(), artifact_store, cache_store, tmp_dir).build(
            plan, BuildConfig()
        )
        fresh_store = ContentAddressedStore(tmp_dir / "elsewhere")
        with pytest.raises(DependencyBuildError, match="missing from the artifact store"):
            _builder(FakeToolchain(), fresh_store, cache_store, tmp_dir).build(plan, BuildConfig())
