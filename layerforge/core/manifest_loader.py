"""Load a project's dependency manifest and lockfile.

Manifest (``layerforge.toml``)::

    [project]
    name = "node"
    version = "0.1.0"
    sources = ["src/**/*"]

    [dependencies]
    alpha = "1.0"
    beta = { version = "2.0", features = ["std"] }

    [features]
    jemalloc = ["alpha/jemalloc"]

Lockfile (``layerforge.lock``)::

    version = 1

    [[package]]
    name = "alpha"
    version = "1.0.3"
    source = "registry"
    checksum = "..."
    dependencies = ["gamma"]

Any problem reading either file is a ``PlanGenerationError``.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from layerforge.core.errors import PlanGenerationError
from layerforge.models.manifest import DependencyManifest, DependencySpec, LockedPackage

DEFAULT_MANIFEST = "layerforge.toml"
DEFAULT_LOCKFILE = "layerforge.lock"


def _read_toml(path: Path, what: str) -> dict[str, Any]:
    if not path.is_file():
        raise PlanGenerationError(f"{what} not found: {path}")
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise PlanGenerationError(f"{what} {path} is malformed: {exc}") from exc


def _parse_dependency(name: str, raw: Any) -> DependencySpec:
    if isinstance(raw, str):
        return DependencySpec(name=name, version=raw)
    if isinstance(raw, dict):
        if "version" not in raw:
            raise PlanGenerationError(f"dependency {name!r} declares no version")
        return DependencySpec(
            name=name,
            version=str(raw["version"]),
            source=str(raw.get("source", "registry")),
            features=tuple(raw.get("features", ())),
        )
    raise PlanGenerationError(
        f"dependency {name!r} must be a version string or a table, got {type(raw).__name__}"
    )


def load_manifest(
    source_root: Path,
    *,
    manifest_name: str = DEFAULT_MANIFEST,
    lockfile_name: str = DEFAULT_LOCKFILE,
) -> DependencyManifest:
    """Parse the manifest and lockfile under *source_root*."""
    source_root = Path(source_root)
    manifest = _read_toml(source_root / manifest_name, "manifest")
    lock = _read_toml(source_root / lockfile_name, "lockfile")

    project = manifest.get("project")
    if not isinstance(project, dict) or "name" not in project:
        raise PlanGenerationError("manifest has no [project] name")

    try:
        dependencies = tuple(
            _parse_dependency(name, raw)
            for name, raw in sorted(manifest.get("dependencies", {}).items())
        )
        locked = tuple(
            LockedPackage(
                name=pkg["name"],
                version=str(pkg["version"]),
                source=str(pkg.get("source", "registry")),
                checksum=str(pkg.get("checksum", "")),
                dependencies=tuple(pkg.get("dependencies", ())),
            )
            for pkg in lock.get("package", [])
        )
        feature_map = {
            str(feature): tuple(enables)
            for feature, enables in manifest.get("features", {}).items()
        }
        return DependencyManifest(
            project_name=str(project["name"]),
            project_version=str(project.get("version", "0.0.0")),
            source_root=source_root.resolve(),
            dependencies=dependencies,
            locked=locked,
            feature_map=feature_map,
            sources=tuple(project.get("sources", ("src/**/*",))),
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise PlanGenerationError(f"malformed manifest or lockfile: {exc!r}") from exc
    except ValidationError as exc:
        raise PlanGenerationError(f"invalid manifest or lockfile: {exc}") from exc
