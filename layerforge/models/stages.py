"""Stage state machine models: a strict forward DAG, no retry in place."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageState(str, Enum):
    """Strict state model for each pipeline stage."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    PASSED = "passed"
    CANCELLED = "cancelled"


# Valid state transitions, enforced structurally by StageMachine.
# PASSED, FAILED, BLOCKED and CANCELLED are terminal.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {
        StageState.RUNNING,
        StageState.BLOCKED,
        StageState.CANCELLED,
    },
    StageState.RUNNING: {
        StageState.PASSED,
        StageState.FAILED,
        StageState.CANCELLED,
    },
    StageState.BLOCKED: set(),
    StageState.FAILED: set(),
    StageState.PASSED: set(),
    StageState.CANCELLED: set(),
}

TERMINAL_STATES: frozenset[StageState] = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


class PipelinePhase(str, Enum):
    """Whole-pipeline phase, derived from the stage states."""

    PLANNING = "planning"
    DEPENDENCY_CACHING = "dependency_caching"
    APPLICATION_BUILDING = "application_building"
    EXTERNAL_INTEGRATING = "external_integrating"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageDefinition(BaseModel):
    """Defines a pipeline stage and its prerequisites.

    The prerequisite list encodes the DAG: a stage cannot enter RUNNING
    unless every prerequisite is PASSED.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    ordinal: float
    phase: PipelinePhase
    prerequisites: list[str] = []


PLAN = "plan"
DEPENDENCY_CACHE = "dependency_cache"
APPLICATION_BUILD = "application_build"
EXTERNAL_INTEGRATION = "external_integration"
ASSEMBLY = "assembly"

# The primary chain is plan -> dependency_cache -> application_build.
# external_integration has no prerequisites; assembly joins both branches.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id=PLAN,
        display_name="Fingerprinting Planner",
        ordinal=1.0,
        phase=PipelinePhase.PLANNING,
    ),
    StageDefinition(
        stage_id=DEPENDENCY_CACHE,
        display_name="Dependency Cache Builder",
        ordinal=2.0,
        phase=PipelinePhase.DEPENDENCY_CACHING,
        prerequisites=[PLAN],
    ),
    StageDefinition(
        stage_id=APPLICATION_BUILD,
        display_name="Primary Artifact Builder",
        ordinal=3.0,
        phase=PipelinePhase.APPLICATION_BUILDING,
        prerequisites=[DEPENDENCY_CACHE],
    ),
    StageDefinition(
        stage_id=EXTERNAL_INTEGRATION,
        display_name="External Component Integrator",
        ordinal=3.5,
        phase=PipelinePhase.EXTERNAL_INTEGRATING,
    ),
    StageDefinition(
        stage_id=ASSEMBLY,
        display_name="Runtime Image Assembler",
        ordinal=4.0,
        phase=PipelinePhase.ASSEMBLING,
        prerequisites=[APPLICATION_BUILD, EXTERNAL_INTEGRATION],
    ),
]
