"""Capability protocols for the opaque collaborators the pipeline drives.

The pipeline never compiles, installs or fetches anything itself. It asks:

1. a ``Toolchain`` to turn a ``BuildRequest`` into an output file;
2. a ``PackageInstaller`` to install runtime packages into an image root;
3. a ``SourceFetcher`` to check out a repository at a reference.

Any object with the right method satisfies the protocol; the defaults live
in ``layerforge.toolchain.command``, ``.installers`` and ``.git``.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from layerforge.models.external import ExternalComponentRef, FetchedSource


class ToolchainError(RuntimeError):
    """Raised by a toolchain when a compilation unit fails to build."""


class InstallError(RuntimeError):
    """Raised by a package installer when installation fails."""


class SourceFetchError(RuntimeError):
    """Raised by a source fetcher when a reference cannot be checked out."""


class BuildKind(str, Enum):
    DEPENDENCY = "dependency"
    APPLICATION = "application"
    EXTERNAL = "external"


class BuildRequest(BaseModel):
    """One compilation unit handed to a toolchain.

    ``inputs`` maps already-built unit names to files the toolchain may link
    against; ``output_path`` is where the toolchain must leave its result.
    """

    model_config = ConfigDict(frozen=True)

    unit: str
    kind: BuildKind
    version: str = ""
    source: Path | None = None
    workdir: Path
    output_path: Path
    profile: str = "release"
    features: tuple[str, ...] = ()
    extra_flags: str = ""
    inputs: dict[str, Path] = {}


@runtime_checkable
class Toolchain(Protocol):
    """Protocol for build backends: ``build(request) -> output path``."""

    def build(self, request: BuildRequest) -> Path:
        """Compile one unit and return the produced file.

        Raises ``ToolchainError`` on failure.
        """
        ...


@runtime_checkable
class PackageInstaller(Protocol):
    """Protocol for system package installers."""

    def install(self, packages: list[str], rootfs: Path) -> None:
        """Install *packages* into the image root. Raises ``InstallError``."""
        ...


@runtime_checkable
class SourceFetcher(Protocol):
    """Protocol for source-control clients."""

    def fetch(self, ref: ExternalComponentRef, destination: Path) -> FetchedSource:
        """Check out *ref* into *destination*. Raises ``SourceFetchError``."""
        ...
