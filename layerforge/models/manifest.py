"""Project manifest, lockfile and build configuration models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator


class DependencySpec(BaseModel):
    """A dependency as declared in the project manifest."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str  # requirement, e.g. "1.0" matches locked "1.0.x"
    source: str = "registry"
    features: tuple[str, ...] = ()

    @field_validator("features")
    @classmethod
    def _sort_features(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(value)))

    def accepts(self, locked_version: str) -> bool:
        """Whether a locked version satisfies this declared requirement.

        A requirement is satisfied by an equal version or by any version
        that extends it at a dotted component boundary.
        """
        return locked_version == self.version or locked_version.startswith(
            f"{self.version}."
        )


class LockedPackage(BaseModel):
    """One resolved package pinned in the lockfile."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    source: str = "registry"
    checksum: str = ""
    dependencies: tuple[str, ...] = ()


class DependencyManifest(BaseModel):
    """A parsed project manifest together with its lockfile."""

    model_config = ConfigDict(frozen=True)

    project_name: str
    project_version: str = "0.0.0"
    source_root: Path
    dependencies: tuple[DependencySpec, ...] = ()
    locked: tuple[LockedPackage, ...] = ()
    # project feature -> ("dependency/feature", ...)
    feature_map: dict[str, tuple[str, ...]] = {}
    # glob patterns of application compilation units, relative to source_root
    sources: tuple[str, ...] = ("src/**/*",)

    def source_files(self) -> frozenset[Path]:
        """Resolved paths of the application's compilation units."""
        return frozenset(
            path.resolve()
            for pattern in self.sources
            for path in self.source_root.glob(pattern)
            if path.is_file()
        )


class BuildConfig(BaseModel):
    """Profile, extra compiler flags and feature flags for one build."""

    model_config = ConfigDict(frozen=True)

    profile: str = "release"
    extra_flags: str = ""
    features: tuple[str, ...] = ()

    @field_validator("features")
    @classmethod
    def _normalize_features(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted({f.strip() for f in value if f.strip()}))
