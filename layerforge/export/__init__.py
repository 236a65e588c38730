"""Export recipes to other build formats."""

from layerforge.export.dockerfile import render_dockerfile

__all__ = ["render_dockerfile"]
