"""Opaque collaborators: toolchains, package installers and source fetchers."""

from layerforge.toolchain.command import CommandToolchain
from layerforge.toolchain.git import GitFetcher
from layerforge.toolchain.installers import CommandInstaller, RecordingInstaller
from layerforge.toolchain.protocols import (
    BuildKind,
    BuildRequest,
    InstallError,
    PackageInstaller,
    SourceFetcher,
    SourceFetchError,
    Toolchain,
    ToolchainError,
)

__all__ = [
    "BuildKind",
    "BuildRequest",
    "CommandInstaller",
    "CommandToolchain",
    "GitFetcher",
    "InstallError",
    "PackageInstaller",
    "RecordingInstaller",
    "SourceFetchError",
    "SourceFetcher",
    "Toolchain",
    "ToolchainError",
]
