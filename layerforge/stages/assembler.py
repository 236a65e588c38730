"""Runtime Image Assembler.

The join point of the pipeline. Starting from an empty root filesystem it
installs the runtime packages, copies in the named artifacts and the declared
auxiliary files, and writes an ``image.json`` manifest describing that content
(run provenance stays on the returned ``RuntimeImage`` and in the ledger).
Nothing else reaches the image: not the dependency cache, not the build
toolchain or its packages, and not the primary project's sources.

Layout of a published image::

    <images>/<digest>/
        image.json
        rootfs/...

The image is assembled in a staging directory next to its final location and
published with a single rename, so a cancelled or failed assembly never leaves
a partial image behind.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath
from typing import Any

from layerforge.core.artifact_store import ArtifactIntegrityError, ContentAddressedStore
from layerforge.core.errors import ImageAssemblyError, PipelineCancelledError
from layerforge.core.hasher import content_address, hash_file
from layerforge.models.artifacts import Artifact
from layerforge.models.image import CopiedFile, Entrypoint, ImageSpec, RuntimeImage
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import (
    APPLICATION_BUILD,
    ASSEMBLY,
    DEPENDENCY_CACHE,
    EXTERNAL_INTEGRATION,
    PLAN,
)
from layerforge.stages.base import BaseStage
from layerforge.toolchain.protocols import InstallError, PackageInstaller

logger = logging.getLogger(__name__)

IMAGE_MANIFEST = "image.json"
ROOTFS = "rootfs"
# Per-run fields of a RuntimeImage; never written to image.json.
RUN_FIELDS = {"metadata", "created_at"}


def image_path(workdir: str, destination: str) -> PurePosixPath:
    """Absolute in-image path for *destination* (relative paths are under workdir)."""
    path = PurePosixPath(destination)
    if not path.is_absolute():
        path = PurePosixPath(workdir) / path
    if ".." in path.parts:
        raise ImageAssemblyError(f"destination {destination!r} escapes the image root")
    return path


def _host_path(rootfs: Path, path: PurePosixPath) -> Path:
    return rootfs.joinpath(*path.parts[1:])


class RuntimeImageAssembler(BaseStage):
    """Stage ``assembly``: artifacts + ``ImageSpec`` -> ``RuntimeImage``.

    Parameters
    ----------
    stores:
        Artifact store per producing stage id; each artifact is read from the
        store of the stage that produced it.
    installer:
        Installs runtime packages into the image root.
    output_dir:
        Where images are published.
    context_dir:
        Build context auxiliary globs are resolved against.
    build_packages:
        Build-only system packages; none may appear in the runtime image.
    exclude:
        Paths inside the build context that never enter an image (the
        workspace holding caches and stores).
    """

    error_class = ImageAssemblyError

    def __init__(
        self,
        stores: Mapping[str, ContentAddressedStore],
        installer: PackageInstaller,
        output_dir: Path,
        *,
        context_dir: Path,
        build_packages: Iterable[str] = (),
        exclude: Iterable[Path] = (),
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._stores = dict(stores)
        self._installer = installer
        self._output_dir = Path(output_dir)
        self._context_dir = Path(context_dir).resolve()
        self._build_packages = frozenset(build_packages)
        self._exclude = tuple(Path(p).resolve() for p in exclude)
        self._cancel_event = cancel_event or threading.Event()

    @property
    def stage_id(self) -> str:
        return ASSEMBLY

    @property
    def display_name(self) -> str:
        return "Runtime Image Assembler"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _store_for(self, artifact: Artifact) -> ContentAddressedStore:
        store = self._stores.get(artifact.stage_id)
        if store is None:
            raise ImageAssemblyError(
                f"no artifact store for {artifact.name!r} (produced by {artifact.stage_id})"
            )
        if not store.exists(artifact.content_address):
            raise ImageAssemblyError(
                f"artifact {artifact.name!r} ({artifact.content_address}) is missing "
                "from the artifact store"
            )
        return store

    def _is_excluded(self, path: Path) -> bool:
        return any(path.is_relative_to(excluded) for excluded in self._exclude)

    def match_auxiliary(
        self, pattern: str, primary_sources: frozenset[Path] = frozenset()
    ) -> list[Path]:
        """Files in the build context matching *pattern*, sorted.

        Workspace paths and the primary project's compilation units are
        skipped. A pattern that matches only compilation units is an error.
        """
        if PurePosixPath(pattern).is_absolute() or ".." in PurePosixPath(pattern).parts:
            raise ImageAssemblyError(f"auxiliary pattern {pattern!r} escapes the build context")
        matches: list[Path] = []
        skipped_sources = 0
        for candidate in sorted(self._context_dir.glob(pattern)):
            if not candidate.is_file():
                continue
            resolved = candidate.resolve()
            if not resolved.is_relative_to(self._context_dir):
                raise ImageAssemblyError(
                    f"auxiliary file {candidate} escapes the build context"
                )
            if self._is_excluded(resolved):
                continue
            if resolved in primary_sources:
                skipped_sources += 1
                continue
            matches.append(candidate)
        if not matches and skipped_sources:
            raise ImageAssemblyError(
                f"auxiliary pattern {pattern!r} matches only primary project sources; "
                "application sources never enter the runtime image"
            )
        if not matches:
            raise ImageAssemblyError(
                f"auxiliary pattern {pattern!r} matches no file in {self._context_dir}"
            )
        if skipped_sources:
            logger.debug(
                "Auxiliary pattern %r: skipped %d primary source file(s)",
                pattern,
                skipped_sources,
            )
        return matches

    def _validate(
        self,
        artifacts: dict[str, Artifact],
        spec: ImageSpec,
        primary_sources: frozenset[Path],
    ) -> PurePosixPath:
        overlap = sorted(self._build_packages.intersection(spec.runtime_packages))
        if overlap:
            raise ImageAssemblyError(
                f"build-only packages cannot be installed in the runtime image: "
                f"{', '.join(overlap)}"
            )
        for copy in spec.copies:
            if copy.artifact not in artifacts:
                raise ImageAssemblyError(
                    f"copy references unknown artifact {copy.artifact!r}; "
                    f"available: {sorted(artifacts)}"
                )
            self._store_for(artifacts[copy.artifact])
        for aux in spec.auxiliary:
            self.match_auxiliary(aux.pattern, primary_sources)
        for copy in spec.copies:
            if copy.artifact == spec.entrypoint.artifact:
                return image_path(spec.workdir, copy.destination)
        raise ImageAssemblyError(
            f"entrypoint {spec.entrypoint.artifact!r} is not a copied artifact"
        )

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(
        self,
        primary: Artifact,
        external: Artifact,
        spec: ImageSpec,
        *,
        external_source: Path | None = None,
        labels: Mapping[str, str] | None = None,
        metadata: Mapping[str, Any] | None = None,
        primary_sources: Iterable[Path] = (),
    ) -> RuntimeImage:
        protected = frozenset(Path(p).resolve() for p in primary_sources)
        artifacts = {primary.name: primary, external.name: external}
        if len(artifacts) != 2:
            raise ImageAssemblyError(
                f"primary and external artifacts share the name {primary.name!r}"
            )
        entrypoint_path = self._validate(artifacts, spec, protected)
        if spec.retain_external_source is not None and external_source is None:
            raise ImageAssemblyError("external source retention requested but no source tree")

        self._output_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self._output_dir))
        try:
            rootfs = staging / ROOTFS
            rootfs.mkdir()
            _host_path(rootfs, PurePosixPath(spec.workdir)).mkdir(parents=True, exist_ok=True)

            try:
                self._installer.install(list(spec.runtime_packages), rootfs)
            except InstallError as exc:
                raise ImageAssemblyError(f"runtime package installation failed: {exc}") from exc

            copied: list[CopiedFile] = []
            for copy in spec.copies:
                artifact = artifacts[copy.artifact]
                destination = image_path(spec.workdir, copy.destination)
                try:
                    self._store_for(artifact).materialize(
                        artifact.content_address,
                        _host_path(rootfs, destination),
                        executable=True,
                    )
                except (FileNotFoundError, ArtifactIntegrityError) as exc:
                    raise ImageAssemblyError(f"cannot copy {artifact.name!r}: {exc}") from exc
                copied.append(
                    CopiedFile(
                        source=artifact.name,
                        destination=str(destination),
                        content_address=artifact.content_address,
                    )
                )

            for aux in spec.auxiliary:
                directory = image_path(spec.workdir, aux.destination)
                for match in self.match_auxiliary(aux.pattern, protected):
                    destination = directory / match.name
                    target = _host_path(rootfs, destination)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(match, target)
                    copied.append(
                        CopiedFile(
                            source=match.relative_to(self._context_dir).as_posix(),
                            destination=str(destination),
                            content_address=f"sha256:{hash_file(target)}",
                        )
                    )

            if spec.retain_external_source is not None and external_source is not None:
                destination = image_path(spec.workdir, spec.retain_external_source)
                shutil.copytree(
                    external_source,
                    _host_path(rootfs, destination),
                    ignore=shutil.ignore_patterns(".git"),
                    dirs_exist_ok=True,
                )
                copied.append(
                    CopiedFile(
                        source=str(external.metadata.get("repository", external.name)),
                        destination=str(destination),
                        content_address=str(external.metadata.get("tree_digest", "")),
                    )
                )

            image_labels = {**spec.labels, **(labels or {})}
            entrypoint = Entrypoint(path=str(entrypoint_path), args=spec.entrypoint.args)
            identity = {
                "base": spec.base,
                "workdir": spec.workdir,
                "runtime_packages": list(spec.runtime_packages),
                "copied": [c.model_dump(mode="json") for c in copied],
                "expose": [str(e) for e in spec.expose],
                "entrypoint": entrypoint.model_dump(mode="json"),
                "labels": image_labels,
                "env": spec.env,
            }
            image_id = content_address(identity)
            final = self._output_dir / image_id.removeprefix("sha256:")

            image = RuntimeImage(
                image_id=image_id,
                base=spec.base,
                workdir=spec.workdir,
                runtime_packages=spec.runtime_packages,
                copied=tuple(copied),
                exposed_endpoints=spec.expose,
                entrypoint=entrypoint,
                labels=image_labels,
                env=spec.env,
                metadata=dict(metadata or {}),
                layout_path=final,
            )
            (staging / IMAGE_MANIFEST).write_text(
                image.model_dump_json(indent=2, exclude=RUN_FIELDS), encoding="utf-8"
            )

            if self._cancel_event.is_set():
                raise PipelineCancelledError(
                    "cancelled before the image was published", stage_id=self.stage_id
                )
            self._publish(staging, final)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info(
            "Published image %s (%d files, %d endpoints)",
            image_id[:19],
            len(copied),
            len(image.exposed_endpoints),
        )
        return image

    @staticmethod
    def _publish(staging: Path, final: Path) -> None:
        if final.exists():
            # Identical image content is already published.
            shutil.rmtree(staging)
            return
        try:
            os.rename(staging, final)
        except OSError:
            if not final.exists():
                raise
            shutil.rmtree(staging)

    # ------------------------------------------------------------------
    # Pipeline stage
    # ------------------------------------------------------------------

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        results = run_context["stage_results"]
        plan = results[PLAN]["plan"]
        primary: Artifact = results[APPLICATION_BUILD]["_artifact"]
        component = results[EXTERNAL_INTEGRATION]["_component"]
        resolution = component.resolution

        labels = {
            "layerforge.project": plan.project_name,
            "layerforge.fingerprint": plan.fingerprint,
            "layerforge.external.repository": resolution.repository,
            "layerforge.external.reference": resolution.reference,
            "layerforge.external.commit": resolution.commit,
            "layerforge.external.resolved_at": resolution.resolved_at.isoformat(),
        }
        metadata = {
            "run_id": run_context.get("run_id", ""),
            "dependency_fingerprint": plan.fingerprint,
            "dependency_cache_key": results[DEPENDENCY_CACHE]["cache_key"],
            "primary": primary.model_dump(mode="json"),
            "external": component.artifact.model_dump(mode="json"),
            "external_resolution": resolution.model_dump(mode="json"),
        }
        if component.drifted_from is not None:
            metadata["external_drifted_from"] = component.drifted_from

        image = self.assemble(
            primary,
            component.artifact,
            recipe.image,
            external_source=component.source_path,
            labels=labels,
            metadata=metadata,
            primary_sources=results[PLAN]["_manifest"].source_files(),
        )
        return {
            "image_id": image.image_id,
            "_image": image,
            "_artifact_refs": [c.content_address for c in image.copied if c.content_address],
            "_details": {"image_id": image.image_id, "layout_path": str(image.layout_path)},
        }
