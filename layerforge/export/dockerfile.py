"""Render a recipe as an equivalent multi-stage container build file.

The generated file mirrors the pipeline. A ``build-base`` stage installs the
build-only packages once. Two stages derive from it: ``builder`` compiles the
dependency closure before the application sources are copied in (so the
container engine's layer cache plays the role of the dependency cache), and
``external`` builds the external component from its own checkout. The
``runtime`` stage starts from the runtime base and receives only the
artifacts, the declared auxiliary files and the runtime packages.

Build arguments ``BUILD_PROFILE``, ``FEATURES`` and the toolchain's extra
flags variable override the recipe's defaults at image build time.
"""

from __future__ import annotations

import json
import shlex
from collections.abc import Sequence

from layerforge.models.plan import BuildPlan
from layerforge.models.recipe import BuildRecipe
from layerforge.stages.assembler import image_path

DEFAULT_INSTALL = ("apt-get", "update", "&&", "apt-get", "install", "-y")
BASE_STAGE = "build-base"
BUILD_DIR = "/build"
EXTERNAL_DIR = "/external"
EXTERNAL_SOURCE_DIR = "/external-src"
OUT_DIR = "/out"

_SHELL_OPERATORS = frozenset({"&&", "||", ";", "|"})


def _quote(arg: str) -> str:
    if arg in _SHELL_OPERATORS:
        return arg
    if "$" in arg:
        # Keep build-argument references expandable.
        return '"' + arg.replace('"', '\\"') + '"'
    return shlex.quote(arg)


def _command(argv: Sequence[str], **fields: str) -> str:
    return " ".join(_quote(arg.format(**fields)) for arg in argv)


def _install(recipe: BuildRecipe, packages: Sequence[str]) -> str:
    command = [a.replace("{rootfs}", "/") for a in recipe.installer.command] or list(
        DEFAULT_INSTALL
    )
    return _command([*command, *packages])


def _flags_env(name: str) -> str:
    return "${" + name + "}"


def render_dockerfile(recipe: BuildRecipe, plan: BuildPlan | None = None) -> str:
    """Return the build file text for *recipe*.

    When *plan* is given, each dependency is compiled in its own ``RUN`` step
    ahead of the application sources; otherwise the dependency step is omitted.
    """
    build = recipe.build
    toolchain = recipe.toolchain
    external = recipe.external
    image = recipe.image
    binary = recipe.project.binary or (plan.project_name if plan else recipe.name)
    flags_env = toolchain.extra_flags_env

    lines: list[str] = [
        "# syntax=docker/dockerfile:1",
        f"# Generated by layerforge from {recipe.path.name if recipe.path else 'recipe'}",
        "",
        f"FROM {build.builder_base} AS {BASE_STAGE}",
    ]
    if build.packages:
        lines.append(f"RUN {_install(recipe, build.packages)}")
    lines += [
        "",
        f"FROM {BASE_STAGE} AS builder",
        f"WORKDIR {BUILD_DIR}",
        "",
        f"ARG BUILD_PROFILE={build.profile}",
        "ENV BUILD_PROFILE=${BUILD_PROFILE}",
        f'ARG {flags_env}="{build.extra_flags}"',
        f'ENV {flags_env}="{_flags_env(flags_env)}"',
        f'ARG FEATURES="{",".join(build.features)}"',
        'ENV FEATURES="${FEATURES}"',
        "",
        f"COPY {recipe.project.manifest} {recipe.project.lockfile} ./",
    ]
    if plan is not None and toolchain.dependency:
        lines.append(f"# Dependencies ({plan.fingerprint})")
        for dependency in plan.dependencies:
            run = _command(
                toolchain.dependency,
                unit=dependency.name,
                version=dependency.version,
                profile="${BUILD_PROFILE}",
                features=",".join(dependency.features),
                source=BUILD_DIR,
                output=f"{OUT_DIR}/deps/{dependency.name}",
                workdir=f"{BUILD_DIR}/.work/{dependency.name}",
            )
            lines.append(f"RUN {run}")

    lines += ["", "# Application", "COPY . ."]
    if toolchain.application:
        run = _command(
            toolchain.application,
            unit=binary,
            version="",
            profile="${BUILD_PROFILE}",
            features="${FEATURES}",
            source=BUILD_DIR,
            output=f"{OUT_DIR}/{binary}",
            workdir=f"{BUILD_DIR}/.work",
        )
        lines.append(f"RUN {run}")

    ref = external.ref
    if ref.is_mutable:
        clone = _command(
            ["git", "clone", "--depth", "1", "-b", ref.reference, ref.repository, EXTERNAL_DIR]
        )
    else:
        clone = _command(["git", "clone", ref.repository, EXTERNAL_DIR]) + " && " + _command(
            ["git", "-C", EXTERNAL_DIR, "checkout", ref.reference]
        )
    lines += [
        "",
        f"FROM {BASE_STAGE} AS external",
        f"RUN {clone}",
    ]
    if image.retain_external_source is not None:
        # Snapshot the checkout before building, without its history.
        snapshot = " && ".join(
            [
                _command(["cp", "-a", EXTERNAL_DIR, EXTERNAL_SOURCE_DIR]),
                _command(["rm", "-rf", f"{EXTERNAL_SOURCE_DIR}/.git"]),
            ]
        )
        lines.append(f"RUN {snapshot}")
    lines.append(f"WORKDIR {EXTERNAL_DIR}")
    if external.toolchain.external:
        run = _command(
            external.toolchain.external,
            unit=external.binary,
            version=ref.reference,
            profile=external.profile,
            features="",
            source=EXTERNAL_DIR,
            output=f"{OUT_DIR}/{external.binary}",
            workdir=f"{EXTERNAL_DIR}/.work",
        )
        lines.append(f"RUN {run}")

    lines += ["", f"FROM {image.base} AS runtime", f"WORKDIR {image.workdir}"]
    for key, value in sorted(image.labels.items()):
        lines.append(f"LABEL {key}={json.dumps(value)}")
    if image.runtime_packages:
        lines.append(f"RUN {_install(recipe, image.runtime_packages)}")

    sources = {binary: "builder", external.binary: "external"}
    for copy in image.copies:
        stage = sources.get(copy.artifact, "builder")
        destination = image_path(image.workdir, copy.destination)
        lines.append(f"COPY --from={stage} {OUT_DIR}/{copy.artifact} {destination}")
    if image.retain_external_source is not None:
        destination = image_path(image.workdir, image.retain_external_source)
        lines.append(f"COPY --from=external {EXTERNAL_SOURCE_DIR} {destination}")
    for aux in image.auxiliary:
        destination = image_path(image.workdir, aux.destination)
        lines.append(f"COPY {aux.pattern} {destination}/")
    for key, value in sorted(image.env.items()):
        lines.append(f"ENV {key}={json.dumps(value)}")
    if image.expose:
        tokens = (_expose_token(e.port, e.protocol.value) for e in image.expose)
        lines.append("EXPOSE " + " ".join(tokens))

    entrypoint = None
    for copy in image.copies:
        if copy.artifact == image.entrypoint.artifact:
            entrypoint = str(image_path(image.workdir, copy.destination))
            break
    if entrypoint is not None:
        lines.append(f"ENTRYPOINT {json.dumps([entrypoint, *image.entrypoint.args])}")
    return "\n".join(lines) + "\n"


def _expose_token(port: int, protocol: str) -> str:
    return str(port) if protocol == "tcp" else f"{port}/{protocol}"
