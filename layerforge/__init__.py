"""layerforge: layered, cache-aware runtime image builds.

A declarative recipe is turned into a minimal runtime image in five stages:
  - Fingerprinting Planner: manifest + lockfile -> content-addressed plan
  - Dependency Cache Builder: compile the closure once per cache key
  - Primary Artifact Builder: compile only the application against the cache
  - External Component Integrator: fetch and build a pinned component in its
    own scope, concurrently with the primary chain
  - Runtime Image Assembler: join point, publishes the image atomically

Every stage transition is recorded in a hash-chained run ledger.
"""

__version__ = "0.1.0"
__description__ = "Layered, cache-aware runtime image builds with external component integration"

from layerforge.core.orchestrator import BuildPipeline
from layerforge.monitor.projection import MonitorProjection as BuildMonitor
from layerforge.cli.app import app as cli

__all__ = ["BuildPipeline", "BuildMonitor", "cli", "__version__"]
