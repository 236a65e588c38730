"""Build recipe models: the declarative input to a pipeline run.

A recipe is loaded from ``layerforge.recipe.toml`` (see
``layerforge.core.recipe_loader``). Paths are resolved against the recipe
file's directory at load time, so the model only ever holds absolute paths.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict

from layerforge.models.external import ExternalComponentRef
from layerforge.models.image import ImageSpec
from layerforge.models.manifest import BuildConfig


class ProjectSection(BaseModel):
    """Where the primary project lives and which binary it produces."""

    model_config = ConfigDict(frozen=True)

    source_root: Path = Path(".")
    manifest: str = "layerforge.toml"
    lockfile: str = "layerforge.lock"
    binary: str | None = None  # defaults to the manifest's project name


class ToolchainSpec(BaseModel):
    """Argv templates for an opaque build toolchain.

    Each template is formatted with the fields of a ``BuildRequest``
    (``{unit}``, ``{version}``, ``{profile}``, ``{features}``, ``{source}``,
    ``{output}``, ``{workdir}``).
    """

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    dependency: tuple[str, ...] = ()
    application: tuple[str, ...] = ()
    external: tuple[str, ...] = ()
    extra_flags_env: str = "LAYERFORGE_EXTRA_FLAGS"
    env: dict[str, str] = {}


class BuildSection(BuildConfig):
    """Build configuration plus the build-only system packages and builder base."""

    packages: tuple[str, ...] = ()
    builder_base: str = "debian:stable"  # only used by Dockerfile export

    @property
    def config(self) -> BuildConfig:
        return BuildConfig(
            profile=self.profile,
            extra_flags=self.extra_flags,
            features=self.features,
        )


class ExternalSection(BaseModel):
    """The independently-versioned component built in its own scope."""

    model_config = ConfigDict(frozen=True)

    repository: str
    reference: str = "main"
    binary: str
    profile: str = "release"
    toolchain: ToolchainSpec = ToolchainSpec()

    @property
    def ref(self) -> ExternalComponentRef:
        return ExternalComponentRef(
            repository=self.repository, reference=self.reference
        )


class InstallerSection(BaseModel):
    """Runtime package installer; an empty command records packages only."""

    model_config = ConfigDict(frozen=True)

    command: tuple[str, ...] = ()


class BuildRecipe(BaseModel):
    """A complete pipeline recipe."""

    model_config = ConfigDict(frozen=True)

    name: str = "layerforge"
    path: Path | None = None  # the recipe file, when loaded from disk
    project: ProjectSection = ProjectSection()
    build: BuildSection = BuildSection()
    toolchain: ToolchainSpec = ToolchainSpec()
    external: ExternalSection
    installer: InstallerSection = InstallerSection()
    image: ImageSpec

    @property
    def context_dir(self) -> Path:
        """The build context auxiliary files are resolved against."""
        return self.project.source_root

    def with_overrides(
        self,
        *,
        profile: str | None = None,
        features: list[str] | None = None,
        extra_flags: str | None = None,
    ) -> BuildRecipe:
        """Return a copy with build arguments overridden (CLI flags)."""
        update: dict[str, object] = {}
        if profile is not None:
            update["profile"] = profile
        if features is not None:
            update["features"] = tuple(features)
        if extra_flags is not None:
            update["extra_flags"] = extra_flags
        if not update:
            return self
        build = BuildSection.model_validate(
            {**self.build.model_dump(), **update}
        )
        return self.model_copy(update={"build": build})
