"""Constants and enums for the workflow execution engine."""

from enum import Enum


class ExecutionState(str, Enum):
    """Workflow execution state."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)


class StepStatus(str, Enum):
    """Status of a single workflow step execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class StepType(str, Enum):
    """Known step categories.

    Handlers are registered by string, so hosts may add their own types;
    these are the categories the executor knows how to shape-check.
    """

    NAVIGATION = "navigation"
    INTERACTION = "interaction"
    EXTRACTION = "extraction"
    VALIDATION = "validation"
    CONTROL = "control"
    WAIT = "wait"


class ErrorAction(str, Enum):
    """Strategy chosen for a failed step."""

    RETRY = "retry"
    SKIP = "skip"
    PAUSE = "pause"
    STOP = "stop"
    FAIL = "fail"


class ErrorType(str, Enum):
    """Kind of an execution error record."""

    STEP_ERROR = "step_error"
    WORKFLOW_ERROR = "workflow_error"
