"""Tests for the Runtime Image Assembler."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from conftest import FailingInstaller
from layerforge.core.artifact_store import ContentAddressedStore
from layerforge.core.errors import ImageAssemblyError, PipelineCancelledError
from layerforge.models.artifacts import Artifact
from layerforge.models.image import ImageSpec
from layerforge.stages.assembler import IMAGE_MANIFEST, ROOTFS, RuntimeImageAssembler, image_path
from layerforge.toolchain.installers import PACKAGE_LIST_PATH, RecordingInstaller


@pytest.fixture
def context_dir(tmp_dir: Path) -> Path:
    root = tmp_dir / "context"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.txt").write_text("secret application source")
    (root / "LICENSE-MIT").write_text("MIT")
    (root / "LICENSE-APACHE").write_text("Apache")
    (root / ".layerforge").mkdir()
    (root / ".layerforge" / "LICENSE-cache").write_text("not a license")
    return root


@pytest.fixture
def stores(tmp_dir: Path) -> dict[str, ContentAddressedStore]:
    return {
        "application_build": ContentAddressedStore(tmp_dir / "primary"),
        "external_integration": ContentAddressedStore(tmp_dir / "external"),
    }


@pytest.fixture
def artifacts(stores) -> tuple[Artifact, Artifact]:
    node = stores["application_build"].store(b"node binary", name="node")
    builder = stores["external_integration"].store(b"builder binary", name="builder")
    return (
        Artifact(name="node", stage_id="application_build", content_address=node.content_address),
        Artifact(
            name="builder",
            stage_id="external_integration",
            content_address=builder.content_address,
            metadata={"repository": "https://example.com/builder.git", "tree_digest": "sha256:t"},
        ),
    )


def _spec(**overrides) -> ImageSpec:
    raw = {
        "base": "ubuntu",
        "workdir": "/app",
        "runtime_packages": ["ca-certificates"],
        "copies": [
            {"artifact": "node", "destination": "/usr/local/bin/node"},
            {"artifact": "builder", "destination": "bin/builder"},
        ],
        "auxiliary": [{"pattern": "LICENSE-*", "destination": "."}],
        "expose": ["30303", "30303/udp", 8545],
        "entrypoint": {"artifact": "node", "args": ["--config", "/app/node.toml"]},
        "labels": {"org.opencontainers.image.licenses": "MIT OR Apache-2.0"},
    }
    raw.update(overrides)
    return ImageSpec.model_validate(raw)


def _assembler(stores, tmp_dir: Path, context_dir: Path, **kwargs) -> RuntimeImageAssembler:
    kwargs.setdefault("installer", RecordingInstaller())
    return RuntimeImageAssembler(
        stores,
        kwargs.pop("installer"),
        tmp_dir / "images",
        context_dir=context_dir,
        exclude=[context_dir / ".layerforge"],
        **kwargs,
    )


def _files(root: Path) -> set[str]:
    return {p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()}


class TestImagePath:
    def test_relative_destination_is_under_workdir(self):
        assert str(image_path("/app", "bin/x")) == "/app/bin/x"
        assert str(image_path("/app", ".")) == "/app"

    def test_absolute_destination_is_kept(self):
        assert str(image_path("/app", "/usr/bin/x")) == "/usr/bin/x"

    def test_escaping_destination_rejected(self):
        with pytest.raises(ImageAssemblyError):
            image_path("/app", "../etc/passwd")


class TestAssembly:
    def test_image_contains_exactly_the_declared_files(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        image = _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, _spec())
        rootfs = image.layout_path / ROOTFS
        assert _files(rootfs) == {
            "usr/local/bin/node",
            "app/bin/builder",
            "app/LICENSE-APACHE",
            "app/LICENSE-MIT",
            PACKAGE_LIST_PATH.as_posix(),
        }
        assert (rootfs / "usr/local/bin/node").read_bytes() == b"node binary"
        assert (rootfs / "usr/local/bin/node").stat().st_mode & 0o111

    def test_manifest_describes_image(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        image = _assembler(stores, tmp_dir, context_dir).assemble(
            *artifacts, _spec(), labels={"layerforge.project": "node"}, metadata={"run_id": "r1"}
        )
        manifest = json.loads((image.layout_path / IMAGE_MANIFEST).read_text())
        assert manifest["image_id"] == image.image_id
        assert manifest["entrypoint"] == {
            "path": "/usr/local/bin/node",
            "args": ["--config", "/app/node.toml"],
        }
        assert manifest["labels"]["layerforge.project"] == "node"
        assert manifest["labels"]["org.opencontainers.image.licenses"] == "MIT OR Apache-2.0"
        assert image.metadata == {"run_id": "r1"}
        assert "metadata" not in manifest
        assert "created_at" not in manifest
        assert [str(e) for e in image.exposed_endpoints] == ["30303/tcp", "30303/udp", "8545/tcp"]

    def test_image_id_names_the_layout(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        image = _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, _spec())
        assert image.layout_path.name == image.image_id.removeprefix("sha256:")
        # No staging directories are left behind.
        assert [p.name for p in (tmp_dir / "images").iterdir()] == [image.layout_path.name]

    def test_identical_assembly_is_idempotent(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        assembler = _assembler(stores, tmp_dir, context_dir)
        first = assembler.assemble(*artifacts, _spec())
        second = assembler.assemble(*artifacts, _spec())
        assert first.image_id == second.image_id
        assert len(list((tmp_dir / "images").iterdir())) == 1

    def test_republished_manifest_matches_later_run(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        assembler = _assembler(stores, tmp_dir, context_dir)
        first = assembler.assemble(*artifacts, _spec(), metadata={"run_id": "r1"})
        published = (first.layout_path / IMAGE_MANIFEST).read_text()
        second = assembler.assemble(*artifacts, _spec(), metadata={"run_id": "r2"})

        assert second.metadata == {"run_id": "r2"}
        assert (second.layout_path / IMAGE_MANIFEST).read_text() == published
        assert json.loads(published) == json.loads(
            second.model_dump_json(exclude={"metadata", "created_at"})
        )

    def test_retained_external_source(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        source = tmp_dir / "checkout"
        (source / ".git").mkdir(parents=True)
        (source / ".git" / "HEAD").write_text("ref")
        (source / "README").write_text("builder")
        image = _assembler(stores, tmp_dir, context_dir).assemble(
            *artifacts, _spec(retain_external_source="builder-src"), external_source=source
        )
        rootfs = image.layout_path / ROOTFS
        assert (rootfs / "app/builder-src/README").is_file()
        assert not (rootfs / "app/builder-src/.git").exists()

    def test_installer_receives_runtime_packages(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        image = _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, _spec())
        recorded = (image.layout_path / ROOTFS / PACKAGE_LIST_PATH).read_text().split()
        assert recorded == ["ca-certificates"]


class TestAssemblyErrors:
    def test_build_only_package_rejected(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        assembler = _assembler(
            stores, tmp_dir, context_dir, build_packages=["libclang-dev", "git"]
        )
        with pytest.raises(ImageAssemblyError, match="build-only packages.*git"):
            assembler.assemble(*artifacts, _spec(runtime_packages=["ca-certificates", "git"]))

    def test_missing_auxiliary_file(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        spec = _spec(auxiliary=[{"pattern": "NOTICE", "destination": "."}])
        with pytest.raises(ImageAssemblyError, match="matches no file"):
            _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, spec)
        assert list((tmp_dir / "images").glob("*")) == []

    def test_workspace_files_never_match(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        matches = _assembler(stores, tmp_dir, context_dir).match_auxiliary("**/LICENSE-*")
        assert [m.name for m in matches] == ["LICENSE-APACHE", "LICENSE-MIT"]

    def test_primary_sources_never_match(self, stores, tmp_dir: Path, context_dir: Path):
        sources = frozenset({(context_dir / "src" / "main.txt").resolve()})
        matches = _assembler(stores, tmp_dir, context_dir).match_auxiliary("**/*", sources)
        assert sorted(m.name for m in matches) == ["LICENSE-APACHE", "LICENSE-MIT"]

    def test_pattern_over_only_sources_rejected(
        self, stores, artifacts, tmp_dir: Path, context_dir: Path
    ):
        spec = _spec(auxiliary=[{"pattern": "src/*", "destination": "."}])
        with pytest.raises(ImageAssemblyError, match="primary project sources"):
            _assembler(stores, tmp_dir, context_dir).assemble(
                *artifacts, spec, primary_sources=[context_dir / "src" / "main.txt"]
            )
        assert list((tmp_dir / "images").glob("*")) == []

    def test_escaping_pattern_rejected(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        with pytest.raises(ImageAssemblyError, match="escapes"):
            _assembler(stores, tmp_dir, context_dir).match_auxiliary("../*")

    def test_unknown_copy_artifact(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        spec = _spec(copies=[{"artifact": "ghost", "destination": "/bin/ghost"}])
        with pytest.raises(ImageAssemblyError, match="unknown artifact 'ghost'"):
            _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, spec)

    def test_entrypoint_must_be_copied(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        spec = _spec(entrypoint={"artifact": "builder"}, copies=[
            {"artifact": "node", "destination": "/usr/local/bin/node"},
        ])
        with pytest.raises(ImageAssemblyError, match="entrypoint"):
            _assembler(stores, tmp_dir, context_dir).assemble(*artifacts, spec)

    def test_artifact_missing_from_store(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        primary, external = artifacts
        ghost = primary.model_copy(update={"content_address": "sha256:" + "9" * 64})
        with pytest.raises(ImageAssemblyError, match="missing"):
            _assembler(stores, tmp_dir, context_dir).assemble(ghost, external, _spec())

    def test_installer_failure(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        assembler = _assembler(stores, tmp_dir, context_dir, installer=FailingInstaller())
        with pytest.raises(ImageAssemblyError, match="package index unreachable"):
            assembler.assemble(*artifacts, _spec())
        assert list((tmp_dir / "images").iterdir()) == []

    def test_cancel_prevents_publish(self, stores, artifacts, tmp_dir: Path, context_dir: Path):
        cancel = threading.Event()
        cancel.set()
        assembler = _assembler(stores, tmp_dir, context_dir, cancel_event=cancel)
        with pytest.raises(PipelineCancelledError):
            assembler.assemble(*artifacts, _spec())
        assert list((tmp_dir / "images").iterdir()) == []
