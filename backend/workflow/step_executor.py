"""Step executor: runs one workflow step at a time.

Looks up the handler registered for the step's type, validates the step,
races the handler against the step timeout and the step's cancellation
token, records the result into the execution context and publishes step
lifecycle events.

Handlers are any object with an ``execute(step, context)`` method, sync or
async. A handler that overruns its timeout or is cancelled is *not* killed:
its task keeps running, its eventual outcome is only logged. Long-running
handlers should watch ``context.cancel_token`` to stop early.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

import structlog

from app.config import get_settings
from core.constants import ErrorAction, StepStatus, StepType
from core.events import EventEmitter, EventType
from core.exceptions import (
    InvalidHandlerError,
    StepCancelledError,
    StepTimeoutError,
    ValidationError,
)
from workflow.context import ExecutionContext
from workflow.expressions import evaluate_expression
from workflow.retry_strategies import RetryStrategy, is_retryable_error

logger = structlog.get_logger(__name__)


# ─── Cancellation ─────────────────────────────────────────────

class CancellationToken:
    """Cooperative cancellation flag handed to handlers via ``context.cancel_token``."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ActiveStep:
    """Bookkeeping for a step currently in flight."""
    step_id: str
    execution_id: str
    cancel_token: CancellationToken
    status: StepStatus = StepStatus.RUNNING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
        }


# ─── Condition operators ──────────────────────────────────────

def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set, dict)):
        return expected in actual
    return str(expected) in str(actual)


_VARIABLE_OPERATORS = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": _contains,
    "not_contains": lambda actual, expected: not _contains(actual, expected),
    "greater_than": lambda actual, expected: float(actual) > float(expected),
    "less_than": lambda actual, expected: float(actual) < float(expected),
    "greater_or_equal": lambda actual, expected: float(actual) >= float(expected),
    "less_or_equal": lambda actual, expected: float(actual) <= float(expected),
    "exists": lambda actual, expected: actual is not None,
    "not_exists": lambda actual, expected: actual is None,
}

_ERROR_REASONS = {
    ErrorAction.SKIP: "Step marked as non-critical",
    ErrorAction.PAUSE: "Manual intervention required",
    ErrorAction.STOP: "Execution stopped",
    ErrorAction.FAIL: "Unrecoverable error",
}


# ─── Step Executor ────────────────────────────────────────────

class StepExecutor:
    """Executes individual workflow steps by delegating to registered handlers."""

    def __init__(
        self,
        events: Optional[EventEmitter] = None,
        default_timeout_ms: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
    ):
        settings = get_settings()
        self.events = events or EventEmitter(settings.EVENT_QUEUE_SIZE)
        self.default_timeout_ms = default_timeout_ms or settings.STEP_DEFAULT_TIMEOUT_MS
        self.retry_delay_ms = retry_delay_ms if retry_delay_ms is not None else settings.STEP_RETRY_DELAY_MS
        self._handlers: dict[str, Any] = {}
        self._active_steps: dict[tuple[str, str], ActiveStep] = {}

    # ── Handler registry ──

    def register_step_handler(self, step_type: str, handler: Any) -> "StepExecutor":
        """Register the handler for a step type, replacing any previous one."""
        if not callable(getattr(handler, "execute", None)):
            raise InvalidHandlerError(f"Step handler for {step_type} must have execute method")
        key = getattr(step_type, "value", step_type)
        self._handlers[key] = handler
        logger.debug("Step handler registered", step_type=key, handler=type(handler).__name__)
        return self

    def get_step_handler(self, step_type: str) -> Any:
        handler = self._handlers.get(getattr(step_type, "value", step_type))
        if handler is None:
            raise ValidationError(f"No handler registered for step type: {step_type}")
        return handler

    # ── Validation ──

    def validate_step_preconditions(self, step: Any, context: ExecutionContext) -> bool:
        """Check the step shape, its handler and its type-specific fields."""
        if not isinstance(step, dict):
            raise ValidationError("Step must be an object")

        for key in ("id", "type", "action"):
            value = step.get(key)
            if not value or not isinstance(value, str):
                raise ValidationError(f"Step must have a valid {key}")

        if step["type"] not in self._handlers:
            raise ValidationError(f"No handler registered for step type: {step['type']}")

        self.validate_step_type_specific(step, context)
        return True

    def validate_step_type_specific(self, step: dict, context: ExecutionContext) -> bool:
        step_type = step.get("type")
        action = step.get("action")
        target = step.get("target")

        if step_type == StepType.NAVIGATION:
            if action == "goto" and not target:
                raise ValidationError("Navigation goto step requires target URL")

        elif step_type == StepType.INTERACTION:
            if action in ("click", "hover", "scroll") and not target:
                raise ValidationError(f"{action} step requires target selector")
            if action in ("type", "select"):
                if not target:
                    raise ValidationError(f"{action} step requires target selector")
                # Empty string is a valid value to type
                if step.get("value") is None:
                    raise ValidationError(f"{action} step requires value")

        elif step_type == StepType.EXTRACTION:
            if not target:
                raise ValidationError("Extraction step requires target selector")

        elif step_type == StepType.VALIDATION:
            if not target and not step.get("conditions"):
                raise ValidationError("Validation step requires target selector or conditions")

        elif step_type == StepType.WAIT:
            value = step.get("value")
            if action == "time" and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ValidationError("Wait time step requires numeric value")
            if action == "element" and not target:
                raise ValidationError("Wait element step requires target selector")

        return True

    # ── Execution ──

    def resolve_timeout(self, step: dict, context: ExecutionContext) -> int:
        """Step timeout in ms: step, then workflow default, then settings."""
        settings = context.workflow.get("settings") or {}
        return step.get("timeout") or settings.get("default_timeout") or self.default_timeout_ms

    async def execute_step(self, step: dict, context: ExecutionContext) -> Any:
        """Run one step and record its result into the context.

        Raises:
            ValidationError: Step shape or handler lookup failed
            StepTimeoutError: Handler overran the step timeout
            StepCancelledError: Step was cancelled through ``cancel_step``
            Exception: Whatever the handler raised, unchanged
        """
        step_id = step.get("id") if isinstance(step, dict) else None
        step_type = step.get("type") if isinstance(step, dict) else None
        execution_id = context.execution_id

        token = CancellationToken()
        record = ActiveStep(step_id=step_id, execution_id=execution_id, cancel_token=token)
        key = (execution_id, step_id)
        self._active_steps[key] = record
        context.cancel_token = token
        started = time.monotonic()

        await self.events.emit(EventType.STEP_STARTED, {
            "execution_id": execution_id,
            "step_id": step_id,
            "step_type": step_type,
            "step_index": context.current_step,
        })

        try:
            self.validate_step_preconditions(step, context)
            handler = self.get_step_handler(step_type)
            timeout_ms = self.resolve_timeout(step, context)

            logger.info(
                "Executing step",
                execution_id=execution_id,
                step_id=step_id,
                step_type=step_type,
                action=step.get("action"),
                timeout_ms=timeout_ms,
            )
            result = await self._run_handler(handler, step, context, token, timeout_ms)

            duration = int((time.monotonic() - started) * 1000)
            record.status = StepStatus.COMPLETED
            self._release_active(key, record)
            context.add_result(
                step_id,
                result,
                StepStatus.COMPLETED,
                duration,
                metadata={"step_type": step_type, "action": step.get("action")},
            )
            await self.events.emit(EventType.STEP_COMPLETED, {
                "execution_id": execution_id,
                "step_id": step_id,
                "status": StepStatus.COMPLETED.value,
                "result": result,
                "duration": duration,
            })
            return result

        except StepCancelledError:
            record.status = StepStatus.CANCELLED
            raise

        except asyncio.CancelledError:
            record.status = StepStatus.CANCELLED
            # cancel_step already announced it when the record is gone
            if self._release_active(key, record):
                await self.events.emit(EventType.STEP_CANCELLED, {
                    "execution_id": execution_id,
                    "step_id": step_id,
                    "reason": "task_cancelled",
                })
            raise

        except Exception as e:
            record.status = StepStatus.FAILED
            self._release_active(key, record)
            logger.warning(
                "Step failed",
                execution_id=execution_id,
                step_id=step_id,
                error=str(e),
                error_class=type(e).__name__,
            )
            await self.events.emit(EventType.STEP_FAILED, {
                "execution_id": execution_id,
                "step_id": step_id,
                "error": str(e),
                "error_class": type(e).__name__,
                "duration": int((time.monotonic() - started) * 1000),
            })
            raise

        finally:
            self._release_active(key, record)
            if context.cancel_token is token:
                context.cancel_token = None

    def _release_active(self, key: tuple[str, str], record: ActiveStep) -> bool:
        """Drop the in-flight record before its terminal event goes out.

        Once released, ``cancel_step`` no longer sees the step, so a step
        gets exactly one of completed, failed or cancelled.
        """
        if self._active_steps.get(key) is record:
            del self._active_steps[key]
            return True
        return False

    async def _run_handler(
        self,
        handler: Any,
        step: dict,
        context: ExecutionContext,
        token: CancellationToken,
        timeout_ms: int,
    ) -> Any:
        """Race the handler against the timeout and the cancellation token."""
        if token.cancelled:
            raise StepCancelledError(step["id"], token.reason or "cancelled")

        outcome = handler.execute(step, context)
        if not inspect.isawaitable(outcome):
            return outcome

        task = asyncio.ensure_future(outcome)
        abandon = partial(self._log_late_outcome, context.execution_id, step["id"])
        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.add_done_callback(abandon)
            raise
        finally:
            cancel_wait.cancel()

        # Cancellation wins even when the handler finished in the same tick
        if token.cancelled:
            task.add_done_callback(abandon)
            raise StepCancelledError(step["id"], token.reason or "cancelled")

        if task in done:
            return task.result()

        task.add_done_callback(abandon)
        token.cancel("timeout")
        raise StepTimeoutError(step["id"], timeout_ms)

    @staticmethod
    def _log_late_outcome(execution_id: str, step_id: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Abandoned step handler failed",
                execution_id=execution_id,
                step_id=step_id,
                error=str(error),
            )
        else:
            logger.debug("Abandoned step handler finished", execution_id=execution_id, step_id=step_id)

    # ── Conditions ──

    def evaluate_condition(self, condition: dict, context: ExecutionContext) -> bool:
        """Evaluate one step condition. Any evaluation error counts as not met."""
        try:
            condition_type = condition.get("type")
            if condition_type == "variable":
                return self._evaluate_variable_condition(condition, context)
            if condition_type == "custom":
                return self._evaluate_custom_condition(condition, context)

            logger.warning("Unknown condition type", condition_type=condition_type)
            return True
        except Exception as e:
            logger.warning(
                "Condition evaluation failed",
                execution_id=context.execution_id,
                condition=condition,
                error=str(e),
            )
            return False

    def _evaluate_variable_condition(self, condition: dict, context: ExecutionContext) -> bool:
        operator = condition.get("operator", "equals")
        compare = _VARIABLE_OPERATORS.get(operator)
        if compare is None:
            logger.warning("Unknown condition operator", operator=operator)
            return True
        actual = context.get_variable(condition.get("variable"))
        return bool(compare(actual, condition.get("value")))

    def _evaluate_custom_condition(self, condition: dict, context: ExecutionContext) -> bool:
        variables = context.get_all_variables()
        step = context.get_current_step()
        extra = {
            "step": step,
            "workflow": context.workflow,
            # Recorded conditions read context.variables.x
            "context": {"variables": variables, "step": step, "workflow": context.workflow},
        }
        return bool(evaluate_expression(condition.get("expression", ""), variables, extra))

    def find_unmet_condition(self, step: dict, context: ExecutionContext) -> Optional[dict]:
        """First condition of the step that does not hold, or None."""
        for condition in step.get("conditions") or []:
            if not self.evaluate_condition(condition, context):
                return condition
        return None

    # ── Error handling ──

    def retry_strategy_for(
        self,
        step: dict,
        context: ExecutionContext,
        default_max_retries: Optional[int] = None,
    ) -> RetryStrategy:
        """Merge workflow and step ``retry_options`` into a strategy.

        Step options win over workflow options, which win over the defaults.
        """
        settings = get_settings()
        workflow_options = (context.workflow.get("settings") or {}).get("retry_options") or {}
        step_options = (step.get("retry_options") or {}) if isinstance(step, dict) else {}
        if default_max_retries is None:
            default_max_retries = settings.WORKFLOW_RETRY_ATTEMPTS
        return RetryStrategy.from_step_options(
            {**workflow_options, **step_options},
            default_max_retries=default_max_retries,
            default_delay_ms=self.retry_delay_ms,
            default_policy=settings.STEP_RETRY_POLICY,
            max_delay_ms=settings.STEP_RETRY_MAX_DELAY_MS,
        )

    @staticmethod
    def should_continue_on_error(step: dict, context: ExecutionContext) -> bool:
        """Step ``continue_on_error`` flag, else the workflow setting."""
        flag = step.get("continue_on_error")
        if flag is None:
            flag = (context.workflow.get("settings") or {}).get("continue_on_error", False)
        return flag is True

    def determine_error_strategy(self, error: BaseException, step: Any, context: ExecutionContext) -> ErrorAction:
        if isinstance(error, (StepCancelledError, asyncio.CancelledError)):
            return ErrorAction.STOP

        step = step if isinstance(step, dict) else {}
        on_error = step.get("on_error")
        if isinstance(on_error, dict):
            action = on_error.get("action")
            if action in {a.value for a in ErrorAction}:
                return ErrorAction(action)

        if self.should_continue_on_error(step, context):
            return ErrorAction.SKIP

        if is_retryable_error(error):
            return ErrorAction.RETRY

        return ErrorAction.FAIL

    async def handle_step_error(self, error: BaseException, step: Any, context: ExecutionContext) -> dict:
        """Record the error, announce it and pick a recovery strategy.

        Returns:
            ``{"action": "retry", "delay": ms}`` or ``{"action": ..., "reason": ...}``
        """
        step_id = step.get("id") if isinstance(step, dict) else None
        record = context.add_error(step_id, error)
        attempt = len(context.errors_for_step(step_id)) if step_id else 1

        await self.events.emit(EventType.STEP_ERROR, {
            "execution_id": context.execution_id,
            "step_id": step_id,
            "step_type": step.get("type") if isinstance(step, dict) else None,
            "step_index": record.step_index,
            "error": record.message,
            "error_class": record.error_class,
            "attempt": attempt,
            "variables": context.get_all_variables(),
        })

        action = self.determine_error_strategy(error, step, context)
        if action == ErrorAction.RETRY:
            delay = self.retry_strategy_for(step, context).compute_delay(attempt)
            return {"action": action.value, "delay": int(delay * 1000)}
        return {"action": action.value, "reason": _ERROR_REASONS[action]}

    # ── Cancellation ──

    async def cancel_step(self, step_id: str, execution_id: Optional[str] = None) -> bool:
        """Signal an in-flight step to stop. False if no such step is active."""
        if execution_id is not None:
            key = (execution_id, step_id)
        else:
            key = next((k for k in self._active_steps if k[1] == step_id), None)

        record = self._active_steps.get(key) if key else None
        if record is None or record.status != StepStatus.RUNNING:
            return False
        del self._active_steps[key]

        record.status = StepStatus.CANCELLED
        record.cancel_token.cancel("cancelled")
        logger.info("Step cancelled", execution_id=record.execution_id, step_id=step_id)
        await self.events.emit(EventType.STEP_CANCELLED, {
            "execution_id": record.execution_id,
            "step_id": step_id,
            "reason": "cancelled",
        })
        return True

    async def wait_for_step_completion(self, step: dict, context: ExecutionContext) -> bool:
        """Apply the step's ``wait_after`` pause (ms)."""
        wait_after = step.get("wait_after")
        if wait_after:
            if isinstance(wait_after, (int, float)) and not isinstance(wait_after, bool):
                wait_ms = wait_after
            else:
                wait_ms = 1000
            await asyncio.sleep(wait_ms / 1000)
        return True

    # ── Introspection ──

    def get_active_steps(self) -> list[dict]:
        return [record.to_dict() for record in self._active_steps.values()]

    def get_execution_stats(self) -> dict:
        return {
            "active_steps": len(self._active_steps),
            "registered_handlers": len(self._handlers),
            "handler_types": list(self._handlers.keys()),
        }
