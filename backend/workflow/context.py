"""Execution context — the mutable state of one workflow run.

Holds variables, the current step index, accumulated results and errors,
and checkpoints. A context is owned by exactly one execution, so it needs
no locking. ``serialize()``/``deserialize()`` produce and consume a
JSON-safe dict so a paused or interrupted run can be persisted and resumed
in another process.
"""

import copy
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import ErrorType, ExecutionState, StepStatus
from core.exceptions import NotFoundError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json_safe(value: Any) -> Any:
    """Ensure a value is JSON-serializable, stringifying what is not."""
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        if isinstance(value, dict):
            return {str(k): _json_safe(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_json_safe(v) for v in value]
        return str(value)


# ─── Records ──────────────────────────────────────────────────

@dataclass
class StepResult:
    """Outcome of a single step, appended to ``ExecutionContext.results``."""
    step_id: str
    step_index: int
    result: Any = None
    status: StepStatus = StepStatus.COMPLETED
    duration: int = 0  # ms
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "step_index": self.step_index,
            "result": _json_safe(self.result),
            "status": self.status.value,
            "duration": self.duration,
            "timestamp": self.timestamp.isoformat(),
            "metadata": _json_safe(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            step_index=data.get("step_index", 0),
            result=data.get("result"),
            status=StepStatus(data.get("status", StepStatus.COMPLETED.value)),
            duration=data.get("duration", 0),
            timestamp=_parse_dt(data.get("timestamp")) or _utcnow(),
            metadata=data.get("metadata", {}),
        )


@dataclass
class ExecutionError:
    """A recorded failure, appended to ``ExecutionContext.errors``."""
    step_id: Optional[str]
    step_index: int
    message: str
    type: ErrorType = ErrorType.STEP_ERROR
    error_class: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionError":
        return cls(
            step_id=data.get("step_id"),
            step_index=data.get("step_index", 0),
            message=data.get("message", ""),
            type=ErrorType(data.get("type", ErrorType.STEP_ERROR.value)),
            error_class=data.get("error_class"),
            timestamp=_parse_dt(data.get("timestamp")) or _utcnow(),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of step index and variables."""
    id: str
    step_index: int
    variables: dict[str, Any]
    description: str = ""
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "step_index": self.step_index,
            "variables": _json_safe(self.variables),
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            id=data["id"],
            step_index=data["step_index"],
            variables=copy.deepcopy(data.get("variables", {})),
            description=data.get("description", ""),
            timestamp=_parse_dt(data.get("timestamp")) or _utcnow(),
        )


# ─── Execution Context ────────────────────────────────────────

class ExecutionContext:
    """State of one workflow execution."""

    def __init__(
        self,
        execution_id: str,
        workflow: dict,
        variables: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ):
        self.execution_id = execution_id
        self.workflow = workflow
        self.workflow_id: str = workflow.get("id")
        self.session_id = session_id or str(uuid.uuid4())

        self.execution_state = ExecutionState.PENDING
        self.current_step: int = 0
        self.start_time: datetime = _utcnow()
        self.end_time: Optional[datetime] = None
        self.paused_at: Optional[datetime] = None
        self.resumed_at: Optional[datetime] = None
        self.cancellation_reason: Optional[str] = None

        self.variables: dict[str, Any] = dict(variables or {})
        self.results: list[StepResult] = []
        self.errors: list[ExecutionError] = []
        self.checkpoints: list[Checkpoint] = []
        self.last_checkpoint: Optional[Checkpoint] = None

        self.metadata: dict[str, Any] = {**(metadata or {}), "engine": "WorkflowEngine", "version": "1.0.0"}

        # Set by the step executor while a step is in flight
        self.cancel_token = None

    @property
    def total_steps(self) -> int:
        return len(self.workflow.get("steps", []))

    # ── Variables ──

    def get_variable(self, name: str, default: Any = None) -> Any:
        """Get a workflow variable."""
        return self.variables.get(name, default)

    def set_variable(self, name: str, value: Any) -> "ExecutionContext":
        """Set a workflow variable."""
        self.variables[name] = value
        return self

    def update_variables(self, variable_map: dict[str, Any]) -> "ExecutionContext":
        self.variables.update(variable_map)
        return self

    def get_all_variables(self) -> dict[str, Any]:
        return dict(self.variables)

    # ── Results & errors ──

    def add_result(
        self,
        step_id: str,
        result: Any,
        status: StepStatus = StepStatus.COMPLETED,
        duration: int = 0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StepResult:
        step_result = StepResult(
            step_id=step_id,
            step_index=self.current_step,
            result=result,
            status=status,
            duration=duration,
            metadata=metadata or {},
        )
        self.results.append(step_result)
        return step_result

    def add_error(
        self,
        step_id: Optional[str],
        error: Any,
        error_type: ErrorType = ErrorType.STEP_ERROR,
    ) -> ExecutionError:
        """Record an error. ``error`` may be an exception or a message."""
        record = ExecutionError(
            step_id=step_id,
            step_index=self.current_step,
            message=str(error),
            type=error_type,
            error_class=type(error).__name__ if isinstance(error, BaseException) else None,
        )
        self.errors.append(record)
        return record

    def errors_for_step(self, step_id: str, error_type: ErrorType = ErrorType.STEP_ERROR) -> list[ExecutionError]:
        return [e for e in self.errors if e.step_id == step_id and e.type == error_type]

    # ── Checkpoints ──

    def create_checkpoint(self, description: str = "") -> Checkpoint:
        """Snapshot the current step index and a deep copy of the variables."""
        checkpoint = Checkpoint(
            id=f"checkpoint_{uuid.uuid4().hex}",
            step_index=self.current_step,
            variables=copy.deepcopy(self.variables),
            description=description,
        )
        self.checkpoints.append(checkpoint)
        self.last_checkpoint = checkpoint
        return checkpoint

    def restore_from_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        """Roll ``current_step`` and variables back to a checkpoint.

        Results and errors recorded since the checkpoint are kept.
        """
        checkpoint = next((cp for cp in self.checkpoints if cp.id == checkpoint_id), None)
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found")

        self.current_step = checkpoint.step_index
        self.variables = copy.deepcopy(checkpoint.variables)
        return checkpoint

    # ── Progress ──

    def get_progress(self) -> dict[str, int]:
        total = self.total_steps
        current = self.current_step
        return {
            "current": current,
            "total": total,
            "percentage": round(current / total * 100) if total > 0 else 0,
            "remaining": total - current,
        }

    def get_execution_duration(self) -> int:
        """Elapsed time in milliseconds (up to ``end_time`` once finished)."""
        end = self.end_time or _utcnow()
        return int((end - self.start_time).total_seconds() * 1000)

    def _step_at(self, index: int) -> Optional[dict]:
        steps = self.workflow.get("steps", [])
        if index < 0 or index >= len(steps):
            return None
        return {**steps[index], "index": index, "is_last": index == len(steps) - 1}

    def get_current_step(self) -> Optional[dict]:
        return self._step_at(self.current_step)

    def get_next_step(self) -> Optional[dict]:
        return self._step_at(self.current_step + 1)

    def is_complete(self) -> bool:
        return self.current_step >= self.total_steps

    def is_paused(self) -> bool:
        return self.execution_state == ExecutionState.PAUSED

    def is_cancelled(self) -> bool:
        return self.execution_state == ExecutionState.CANCELLED

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def get_summary(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "state": self.execution_state.value,
            "progress": self.get_progress(),
            "duration": self.get_execution_duration(),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error_count": len(self.errors),
            "result_count": len(self.results),
            "checkpoint_count": len(self.checkpoints),
            "variables": self.get_all_variables(),
        }

    # ── Persistence ──

    def serialize(self) -> dict:
        """Plain-data projection of the context for external storage."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "session_id": self.session_id,
            "workflow": _json_safe(self.workflow),
            "execution_state": self.execution_state.value,
            "current_step": self.current_step,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "resumed_at": self.resumed_at.isoformat() if self.resumed_at else None,
            "variables": _json_safe(self.variables),
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "checkpoints": [cp.to_dict() for cp in self.checkpoints],
            "last_checkpoint_id": self.last_checkpoint.id if self.last_checkpoint else None,
            "metadata": _json_safe(self.metadata),
            "cancellation_reason": self.cancellation_reason,
        }

    @classmethod
    def deserialize(cls, data: dict) -> "ExecutionContext":
        """Rebuild a context from ``serialize()`` output."""
        context = cls(
            execution_id=data["execution_id"],
            workflow=data.get("workflow") or {"id": data.get("workflow_id"), "steps": []},
            variables=copy.deepcopy(data.get("variables", {})),
            session_id=data.get("session_id"),
            metadata=data.get("metadata"),
        )
        context.workflow_id = data.get("workflow_id", context.workflow_id)
        context.execution_state = ExecutionState(data.get("execution_state", ExecutionState.PENDING.value))
        context.current_step = data.get("current_step", 0)
        context.start_time = _parse_dt(data.get("start_time")) or context.start_time
        context.end_time = _parse_dt(data.get("end_time"))
        context.paused_at = _parse_dt(data.get("paused_at"))
        context.resumed_at = _parse_dt(data.get("resumed_at"))
        context.cancellation_reason = data.get("cancellation_reason")

        context.results = [StepResult.from_dict(r) for r in data.get("results", [])]
        context.errors = [ExecutionError.from_dict(e) for e in data.get("errors", [])]
        context.checkpoints = [Checkpoint.from_dict(cp) for cp in data.get("checkpoints", [])]

        last_id = data.get("last_checkpoint_id")
        context.last_checkpoint = next((cp for cp in context.checkpoints if cp.id == last_id), None)
        return context


