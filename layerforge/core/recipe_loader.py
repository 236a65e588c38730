"""Load a ``BuildRecipe`` from a TOML recipe file.

Example (``layerforge.recipe.toml``)::

    name = "node"

    [project]
    source_root = "."
    binary = "node"

    [build]
    profile = "release"
    features = []
    extra_flags = ""
    packages = ["libclang-dev", "pkg-config", "git"]

    [toolchain]
    dependency = ["make", "-C", "{source}", "dep", "NAME={unit}", "OUT={output}"]
    application = ["make", "-C", "{source}", "app", "OUT={output}"]
    extra_flags_env = "CFLAGS"

    [external]
    repository = "https://example.com/builder.git"
    reference = "main"
    binary = "builder"

    [external.toolchain]
    external = ["make", "-C", "{source}", "OUT={output}"]

    [image]
    base = "ubuntu"
    workdir = "/app"
    runtime_packages = ["ca-certificates"]
    expose = ["30303", "30303/udp", "9001", "8545", "8546"]
    retain_external_source = "/app/builder"

    [[image.copies]]
    artifact = "node"
    destination = "/usr/local/bin/node"

    [[image.auxiliary]]
    pattern = "LICENSE-*"
    destination = "/app"

    [image.entrypoint]
    artifact = "node"

Relative paths are resolved against the recipe file's directory.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import ValidationError

from layerforge.models.recipe import BuildRecipe

DEFAULT_RECIPE = "layerforge.recipe.toml"


class RecipeError(ValueError):
    """Raised when a recipe file is missing, malformed or invalid."""


def load_recipe(path: Path) -> BuildRecipe:
    """Read and validate a recipe file."""
    path = Path(path)
    if path.is_dir():
        path = path / DEFAULT_RECIPE
    if not path.is_file():
        raise RecipeError(f"Recipe not found: {path}")

    try:
        with path.open("rb") as fh:
            raw = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise RecipeError(f"Recipe {path} is malformed: {exc}") from exc

    base_dir = path.resolve().parent
    project = dict(raw.get("project", {}))
    project["source_root"] = (base_dir / project.get("source_root", ".")).resolve()
    raw["project"] = project
    raw["path"] = path.resolve()

    try:
        return BuildRecipe.model_validate(raw)
    except ValidationError as exc:
        raise RecipeError(f"Recipe {path} is invalid: {exc}") from exc
