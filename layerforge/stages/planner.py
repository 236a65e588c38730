"""Fingerprinting Planner.

Reduces a project manifest and its lockfile to a ``BuildPlan``: the
dependency closure, in build order, with the features each package is built
with. The plan's fingerprint is the content address of that closure and of
the requirements the manifest declares for it, and nothing else. Application
sources, timestamps and the project's own version
never enter it, so editing application code leaves the fingerprint (and thus
the dependency cache key) unchanged.

The lockfile is authoritative. Planning never resolves a version on its own;
a declared or transitive dependency without a lockfile entry is an error.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Any

from layerforge.core.errors import PlanGenerationError
from layerforge.core.hasher import content_address
from layerforge.core.manifest_loader import load_manifest
from layerforge.models.manifest import BuildConfig, DependencyManifest, LockedPackage
from layerforge.models.plan import PLAN_FORMAT_VERSION, BuildPlan, PlannedDependency
from layerforge.models.recipe import BuildRecipe
from layerforge.models.stages import PLAN
from layerforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


def _index_lockfile(locked: tuple[LockedPackage, ...]) -> dict[str, LockedPackage]:
    index: dict[str, LockedPackage] = {}
    for package in locked:
        seen = index.get(package.name)
        if seen is not None and seen.version != package.version:
            raise PlanGenerationError(
                f"version conflict: lockfile pins {package.name!r} at both "
                f"{seen.version} and {package.version}"
            )
        index[package.name] = package
    return index


def _expand_features(
    manifest: DependencyManifest, requested: tuple[str, ...]
) -> dict[str, set[str]]:
    """Map project feature flags to the dependency features they enable."""
    enabled: dict[str, set[str]] = defaultdict(set)
    pending = list(requested)
    visited: set[str] = set()
    while pending:
        feature = pending.pop()
        if feature in visited:
            continue
        visited.add(feature)
        if feature not in manifest.feature_map:
            raise PlanGenerationError(
                f"unknown feature {feature!r}; known features: "
                f"{sorted(manifest.feature_map) or 'none'}"
            )
        for item in manifest.feature_map[feature]:
            dependency, sep, dep_feature = item.partition("/")
            if sep:
                enabled[dependency].add(dep_feature)
            else:
                # A bare name enables another project feature.
                pending.append(item)
    return enabled


class FingerprintPlanner(BaseStage):
    """Stage ``plan``: manifest + lockfile -> ``BuildPlan``."""

    error_class = PlanGenerationError

    @property
    def stage_id(self) -> str:
        return PLAN

    @property
    def display_name(self) -> str:
        return "Fingerprinting Planner"

    def plan(self, manifest: DependencyManifest, config: BuildConfig) -> BuildPlan:
        """Compute the dependency closure and its fingerprint."""
        lock = _index_lockfile(manifest.locked)
        feature_deps = _expand_features(manifest, config.features)

        features: dict[str, set[str]] = defaultdict(set)
        direct: set[str] = set()
        for spec in manifest.dependencies:
            package = lock.get(spec.name)
            if package is None:
                raise PlanGenerationError(
                    f"dependency {spec.name!r} {spec.version} has no lockfile entry; "
                    "update the lockfile"
                )
            if not spec.accepts(package.version):
                raise PlanGenerationError(
                    f"dependency {spec.name!r} requires {spec.version} but the "
                    f"lockfile pins {package.version}"
                )
            direct.add(spec.name)
            features[spec.name].update(spec.features)

        # Walk the lockfile from the declared dependencies.
        closure: dict[str, LockedPackage] = {}
        stack = sorted(direct, reverse=True)
        while stack:
            name = stack.pop()
            if name in closure:
                continue
            package = lock[name]
            closure[name] = package
            for requirement in package.dependencies:
                if requirement not in lock:
                    raise PlanGenerationError(
                        f"{name!r} requires {requirement!r}, which has no lockfile entry"
                    )
                stack.append(requirement)

        for dependency, enabled in feature_deps.items():
            if dependency not in closure:
                raise PlanGenerationError(
                    f"feature flags enable {dependency!r}/{sorted(enabled)} but "
                    f"{dependency!r} is not a dependency"
                )
            features[dependency].update(enabled)

        ordered = [
            PlannedDependency(
                name=package.name,
                version=package.version,
                source=package.source,
                checksum=package.checksum,
                features=tuple(sorted(features[package.name])),
                requires=tuple(sorted(set(package.dependencies))),
                direct=package.name in direct,
            )
            for package in self._build_order(closure)
        ]
        declared = sorted(manifest.dependencies, key=lambda spec: spec.name)
        fingerprint = content_address(
            {
                "format": PLAN_FORMAT_VERSION,
                "declared": [spec.model_dump(mode="json") for spec in declared],
                "dependencies": [d.model_dump(mode="json") for d in ordered],
            }
        )
        logger.info(
            "Planned %d dependencies for %s: %s",
            len(ordered),
            manifest.project_name,
            fingerprint[:19],
        )
        return BuildPlan(
            fingerprint=fingerprint,
            project_name=manifest.project_name,
            dependencies=tuple(ordered),
        )

    @staticmethod
    def _build_order(closure: dict[str, LockedPackage]) -> list[LockedPackage]:
        """Dependencies before dependents; ties broken by name."""
        in_degree = {name: 0 for name in closure}
        dependents: dict[str, list[str]] = defaultdict(list)
        for name, package in closure.items():
            for requirement in set(package.dependencies):
                in_degree[name] += 1
                dependents[requirement].append(name)

        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[LockedPackage] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(closure[name])
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(closure):
            cyclic = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise PlanGenerationError(f"dependency cycle among: {', '.join(cyclic)}")
        return order

    # ------------------------------------------------------------------
    # Pipeline stage
    # ------------------------------------------------------------------

    def describe_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        return {"project": recipe.project, "build": recipe.build.config}

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        recipe: BuildRecipe = run_context["recipe"]
        manifest = load_manifest(
            recipe.project.source_root,
            manifest_name=recipe.project.manifest,
            lockfile_name=recipe.project.lockfile,
        )
        config = recipe.build.config
        plan = self.plan(manifest, config)
        return {
            "plan": plan,
            "config": config,
            "_manifest": manifest,
            "_details": {
                "fingerprint": plan.fingerprint,
                "dependencies": len(plan.dependencies),
            },
        }
