"""Abstract base stage with an enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only ``execute()``.
The ``run_stage()`` wrapper is **not overridable**; it enforces the canonical
lifecycle ordering:

    validate_prerequisites -> compute_input_hash -> execute
        -> compute_output_hash -> record

Stage failures always surface as the stage's ``PipelineError`` subclass.
Anything else raised by ``execute()`` is wrapped into ``error_class`` with the
original exception chained.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar, final

from pydantic_core import to_jsonable_python

from layerforge.core.errors import PipelineError
from layerforge.core.hasher import compute_input_hash, compute_output_hash

logger = logging.getLogger(__name__)


class StagePrerequisiteError(RuntimeError):
    """Raised when a stage runs before the results it consumes exist."""


class BaseStage(abc.ABC):
    """Abstract base for all layerforge pipeline stages.

    Subclasses **must** implement:
        * ``stage_id``, the identifier used in the ledger (e.g. ``"plan"``).
        * ``display_name``, shown in the build monitor.
        * ``execute(run_context)``, the stage's core logic.

    Subclasses **may** override:
        * ``error_class``, the ``PipelineError`` unexpected failures become.
        * ``wrap_error(exc)`` when the error needs more than a message.
        * ``describe_inputs(run_context)`` to add stage inputs to the input hash.

    Result dict conventions: keys starting with ``_`` are not hashed.
    ``_artifact_refs`` lists content addresses for the ledger and
    ``_details`` carries ledger details for the PASSED transition.
    """

    error_class: ClassVar[type[PipelineError]] = PipelineError

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @property
    @abc.abstractmethod
    def stage_id(self) -> str:
        """Unique stage identifier."""
        ...

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        """Human-readable display name for the build monitor."""
        ...

    @abc.abstractmethod
    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the stage's core logic.

        Parameters
        ----------
        run_context:
            Run-wide state: ``run_id``, ``recipe``, ``stage_definitions``,
            ``cancel_event`` and prior ``stage_results``.

        Returns
        -------
        dict:
            Structured result for downstream stages.
        """
        ...

    def describe_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        return {}

    def wrap_error(self, exc: Exception) -> PipelineError:
        return self.error_class(f"{type(exc).__name__}: {exc}", stage_id=self.stage_id)

    # ------------------------------------------------------------------
    # Lifecycle (not overridable)
    # ------------------------------------------------------------------

    @final
    def run_stage(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the full stage lifecycle.  **Do not override.**

        Returns the result dict produced by ``execute()``, augmented with
        ``_input_hash`` and ``_output_hash`` keys.
        """
        self.validate_prerequisites(run_context)

        input_hash = self.compute_input_hash(run_context)
        logger.info("%s [%s] input_hash=%s", self.display_name, self.stage_id, input_hash[:12])

        try:
            result = self.execute(run_context)
        except PipelineError as exc:
            logger.error("%s [%s] failed: %s", self.display_name, self.stage_id, exc)
            raise
        except Exception as exc:
            logger.error(
                "%s [%s] execution failed: %s", self.display_name, self.stage_id, exc
            )
            raise self.wrap_error(exc) from exc

        output_hash = self.compute_output_hash(result)
        result["_input_hash"] = input_hash
        result["_output_hash"] = output_hash
        run_context.setdefault("stage_results", {})[self.stage_id] = result

        logger.info(
            "%s [%s] recorded input=%s output=%s",
            self.display_name,
            self.stage_id,
            input_hash[:12],
            output_hash[:12],
        )
        return result

    @final
    def prerequisites(self, run_context: dict[str, Any]) -> list[str]:
        definition = run_context.get("stage_definitions", {}).get(self.stage_id)
        return list(definition.prerequisites) if definition is not None else []

    @final
    def validate_prerequisites(self, run_context: dict[str, Any]) -> None:
        """Ensure every prerequisite stage has recorded a result."""
        results = run_context.get("stage_results", {})
        missing = [sid for sid in self.prerequisites(run_context) if sid not in results]
        if missing:
            raise StagePrerequisiteError(
                f"Cannot run {self.stage_id}: no result from {', '.join(missing)}"
            )

    @final
    def compute_input_hash(self, run_context: dict[str, Any]) -> str:
        """SHA-256 of canonical(stage_id + run id + prerequisite outputs + inputs)."""
        results = run_context.get("stage_results", {})
        inputs: dict[str, Any] = {
            "run_id": run_context.get("run_id", ""),
            "prior_output_hashes": {
                sid: results[sid].get("_output_hash", "")
                for sid in self.prerequisites(run_context)
                if sid in results
            },
            "inputs": to_jsonable_python(self.describe_inputs(run_context)),
        }
        return compute_input_hash(self.stage_id, inputs)

    @final
    def compute_output_hash(self, result: dict[str, Any]) -> str:
        """SHA-256 of canonical(stage_id + result), internal keys stripped."""
        hashable = {k: v for k, v in result.items() if not k.startswith("_")}
        return compute_output_hash(self.stage_id, to_jsonable_python(hashable))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} stage_id={self.stage_id!r}>"
