"""Build plan models: the dependency-only recipe the cache is built from."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

# Bumped whenever the fingerprint payload layout changes.
PLAN_FORMAT_VERSION = 1


class PlannedDependency(BaseModel):
    """One package of the dependency closure with its enabled features."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    source: str
    checksum: str = ""
    features: tuple[str, ...] = ()
    requires: tuple[str, ...] = ()
    direct: bool = False


class BuildPlan(BaseModel):
    """Deterministic, content-addressed description of the dependency closure.

    The plan carries no application code and no timestamps: planning the
    same manifest under the same feature flags always yields an equal plan.
    Dependencies are ordered so that every package follows the packages it
    requires.
    """

    model_config = ConfigDict(frozen=True)

    fingerprint: str  # "sha256:<hex>"
    project_name: str
    dependencies: tuple[PlannedDependency, ...] = ()

    @property
    def dependency_names(self) -> list[str]:
        return [d.name for d in self.dependencies]
