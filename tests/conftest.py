"""Shared test fixtures for layerforge."""

from __future__ import annotations

import json
import threading
import time
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.cache_store import DependencyCacheStore
from layerforge.core.prerequisite_graph import PrerequisiteGraph
from layerforge.core.recipe_loader import load_recipe
from layerforge.core.run_ledger import RunLedger
from layerforge.core.stage_machine import StageMachine
from layerforge.models.config import PipelineConfig
from layerforge.models.external import ExternalComponentRef, FetchedSource
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import DEFAULT_STAGE_DEFINITIONS
from layerforge.toolchain.protocols import (
    BuildRequest,
    InstallError,
    SourceFetchError,
    ToolchainError,
)

COMMIT_A = "a" * 40
COMMIT_B = "b" * 40


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeToolchain:
    """Deterministic toolchain that writes a description of each request."""

    def __init__(
        self,
        name: str = "fake",
        *,
        fail_on: set[str] | None = None,
        delay: float = 0.0,
        on_build: Callable[[BuildRequest], None] | None = None,
    ) -> None:
        self.name = name
        self.on_build = on_build
        self.fail_on = set(fail_on or ())
        self.delay = delay
        self.builds: Counter[str] = Counter()
        self.requests: list[BuildRequest] = []
        self._lock = threading.Lock()

    @property
    def build_count(self) -> int:
        return sum(self.builds.values())

    def build(self, request: BuildRequest) -> Path:
        with self._lock:
            self.builds[request.unit] += 1
            self.requests.append(request)
        if self.on_build is not None:
            self.on_build(request)
        if self.delay:
            time.sleep(self.delay)
        if request.unit in self.fail_on:
            raise ToolchainError(f"{request.unit}: compilation failed")
        payload = {
            "toolchain": self.name,
            "unit": request.unit,
            "kind": request.kind.value,
            "version": request.version,
            "profile": request.profile,
            "features": list(request.features),
            "extra_flags": request.extra_flags,
            "inputs": sorted(request.inputs),
        }
        request.output_path.parent.mkdir(parents=True, exist_ok=True)
        request.output_path.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
        return request.output_path


class FakeFetcher:
    """Source fetcher backed by a mutable reference -> commit table."""

    def __init__(self, commits: dict[str, str] | None = None, *, fail: bool = False) -> None:
        self.commits = dict(commits or {"main": COMMIT_A})
        self.fail = fail
        self.fetches = 0

    def fetch(self, ref: ExternalComponentRef, destination: Path) -> FetchedSource:
        self.fetches += 1
        if self.fail:
            raise SourceFetchError(f"could not resolve host for {ref.repository}")
        if ref.reference not in self.commits and ref.is_mutable:
            raise SourceFetchError(f"remote branch {ref.reference} not found")
        commit = self.commits.get(ref.reference, ref.reference)
        destination.mkdir(parents=True, exist_ok=True)
        (destination / "README").write_text(f"builder at {commit}\n", encoding="utf-8")
        (destination / "src").mkdir(exist_ok=True)
        (destination / "src" / "main.txt").write_text(commit, encoding="utf-8")
        return FetchedSource(path=destination, commit=commit)


class FailingInstaller:
    def install(self, packages: list[str], rootfs: Path) -> None:
        raise InstallError("package index unreachable")


# ---------------------------------------------------------------------------
# Project writers
# ---------------------------------------------------------------------------


def _toml_value(value: Any) -> str:
    if isinstance(value, dict):
        return "{ " + ", ".join(f"{k} = {_toml_value(v)}" for k, v in value.items()) + " }"
    return json.dumps(value)


def write_manifest(
    root: Path,
    dependencies: dict[str, Any],
    *,
    name: str = "node",
    features: dict[str, list[str]] | None = None,
) -> Path:
    lines = ["[project]", f'name = "{name}"', 'version = "0.1.0"', "", "[dependencies]"]
    lines += [f"{dep} = {_toml_value(spec)}" for dep, spec in dependencies.items()]
    if features:
        lines += ["", "[features]"]
        lines += [f"{feature} = {_toml_value(items)}" for feature, items in features.items()]
    path = root / "layerforge.toml"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def write_lockfile(root: Path, packages: list[dict[str, Any]]) -> Path:
    lines = ["version = 1"]
    for package in packages:
        lines += ["", "[[package]]"]
        lines += [f"{key} = {_toml_value(value)}" for key, value in package.items()]
    path = root / "layerforge.lock"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


RECIPE_TEMPLATE = """\
name = "node"

[project]
source_root = "."
binary = "node"

[build]
profile = "release"
packages = ["build-essential", "pkg-config", "git"]

[toolchain]
name = "primary"

[external]
repository = "https://example.com/builder.git"
reference = "{reference}"
binary = "builder"

[external.toolchain]
name = "external"

[image]
base = "ubuntu"
workdir = "/app"
runtime_packages = {runtime_packages}
expose = ["30303", "30303/udp", "9001", "8545", "8546"]
{retain}
[image.labels]
"org.opencontainers.image.source" = "https://example.com/node"
"org.opencontainers.image.licenses" = "MIT OR Apache-2.0"

[[image.copies]]
artifact = "node"
destination = "/usr/local/bin/node"

[[image.copies]]
artifact = "builder"
destination = "/usr/local/bin/builder"

[[image.auxiliary]]
pattern = "{license_pattern}"
destination = "."

[image.entrypoint]
artifact = "{entrypoint}"
"""


def write_recipe(
    root: Path,
    *,
    reference: str = "main",
    runtime_packages: list[str] | None = None,
    retain: str | None = None,
    license_pattern: str = "LICENSE-*",
    entrypoint: str = "node",
) -> Path:
    path = root / "layerforge.recipe.toml"
    path.write_text(
        RECIPE_TEMPLATE.format(
            reference=reference,
            runtime_packages=json.dumps(runtime_packages or ["ca-certificates"]),
            retain=f'retain_external_source = "{retain}"\n' if retain else "",
            license_pattern=license_pattern,
            entrypoint=entrypoint,
        ),
        encoding="utf-8",
    )
    return path


DEFAULT_LOCK = [
    {"name": "alpha", "version": "1.0.3", "checksum": "c-alpha", "dependencies": ["gamma"]},
    {"name": "beta", "version": "2.0.1", "checksum": "c-beta", "dependencies": ["gamma"]},
    {"name": "gamma", "version": "0.4.0", "checksum": "c-gamma"},
]


def write_project(
    root: Path,
    *,
    dependencies: dict[str, Any] | None = None,
    lock: list[dict[str, Any]] | None = None,
    features: dict[str, list[str]] | None = None,
    **recipe_options: Any,
) -> Path:
    """Write a complete project (sources, manifest, lockfile, recipe)."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "main.txt").write_text("fn main() {}\n", encoding="utf-8")
    (root / "LICENSE-MIT").write_text("MIT\n", encoding="utf-8")
    (root / "LICENSE-APACHE").write_text("Apache-2.0\n", encoding="utf-8")
    write_manifest(
        root,
        dependencies if dependencies is not None else {"alpha": "1.0", "beta": "2.0"},
        features=features,
    )
    write_lockfile(root, lock if lock is not None else DEFAULT_LOCK)
    return write_recipe(root, **recipe_options)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "artifacts")


@pytest.fixture
def cache_store(tmp_dir: Path) -> DependencyCacheStore:
    """Provide a cache index with fast polling."""
    return DependencyCacheStore(tmp_dir / "cache.db", poll_interval=0.01)


@pytest.fixture
def graph() -> PrerequisiteGraph:
    """Provide a PrerequisiteGraph with the default pipeline stages."""
    return PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def stage_machine(ledger: RunLedger, graph: PrerequisiteGraph) -> StageMachine:
    """Provide a StageMachine wired to test ledger and graph."""
    return StageMachine(ledger, graph)


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "lf-test-run-001"


@pytest.fixture
def project_dir(tmp_dir: Path) -> Path:
    """A complete sample project: alpha@1.0 and beta@2.0, both needing gamma."""
    root = tmp_dir / "project"
    write_project(root)
    return root


@pytest.fixture
def recipe(project_dir: Path) -> BuildRecipe:
    return load_recipe(project_dir)


@pytest.fixture
def workspace_config(tmp_dir: Path) -> PipelineConfig:
    """All pipeline state under one temp workspace, with fast cache polling."""
    return PipelineConfig.under(tmp_dir / "workspace", cache_poll_interval_seconds=0.01)


@pytest.fixture
def make_pipeline(
    recipe: BuildRecipe, workspace_config: PipelineConfig
) -> Callable[..., Any]:
    """Factory fixture: a BuildPipeline with fake collaborators.

    Returns ``(pipeline, primary_toolchain, external_toolchain, fetcher)``.
    """
    from layerforge.core.orchestrator import BuildPipeline
    from layerforge.toolchain.installers import RecordingInstaller

    def _factory(**overrides: Any):
        toolchain = overrides.pop("toolchain", None) or FakeToolchain("primary")
        external = overrides.pop("external_toolchain", None) or FakeToolchain("external")
        fetcher = overrides.pop("fetcher", None) or FakeFetcher()
        pipeline = BuildPipeline(
            overrides.pop("recipe", recipe),
            overrides.pop("config", workspace_config),
            toolchain=toolchain,
            external_toolchain=external,
            fetcher=fetcher,
            installer=overrides.pop("installer", None) or RecordingInstaller(),
            **overrides,
        )
        return pipeline, toolchain, external, fetcher

    return _factory
