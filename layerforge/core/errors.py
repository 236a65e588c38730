"""Pipeline error taxonomy.

Every stage failure is fatal to the pipeline invocation. Each error carries
the ``stage_id`` of the stage that raised it so the CLI and the ledger can
report the failing stage together with the underlying error verbatim.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for all stage failures."""

    stage_id: str = ""

    def __init__(self, message: str, *, stage_id: str | None = None) -> None:
        super().__init__(message)
        if stage_id is not None:
            self.stage_id = stage_id

    @property
    def reason(self) -> str:
        return str(self)


class PlanGenerationError(PipelineError):
    """The dependency manifest is malformed or cannot be resolved."""

    stage_id = "plan"


class DependencyBuildError(PipelineError):
    """A dependency in the closure failed to compile."""

    stage_id = "dependency_cache"

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(f"dependency {dependency!r}: {message}")
        self.dependency = dependency


class ApplicationBuildError(PipelineError):
    """The primary application failed to compile."""

    stage_id = "application_build"


class FetchError(PipelineError):
    """The external component's source could not be fetched."""

    stage_id = "external_integration"


class ExternalBuildError(PipelineError):
    """The external component's source tree failed to compile."""

    stage_id = "external_integration"


class ImageAssemblyError(PipelineError):
    """The runtime image could not be assembled from the build context."""

    stage_id = "assembly"


class PipelineCancelledError(PipelineError):
    """The pipeline was cancelled before the runtime image was published."""
