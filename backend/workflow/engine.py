"""Workflow Execution Engine — sequential workflow runner.

Takes a workflow definition (an ordered list of steps) and drives it to
completion one step at a time:

- Validation of the definition before anything runs
- Conditional steps (skipped when a condition does not hold)
- Per-step timeout and cooperative cancellation (via the StepExecutor)
- Transparent retry with backoff for transient failures
- Error strategies per step: retry, skip, pause, stop, fail
- Pause/resume at step boundaries, stop at any time
- Bounded concurrency across executions
- Resumption of a serialized ExecutionContext

Workflow Definition Schema:
{
    "id": "login-and-export",
    "variables": { "username": "bob" },
    "settings": {
        "default_timeout": 30000,
        "retry_options": { "max_retries": 3, "policy": "exponential", "base_delay": 500 },
        "continue_on_error": false
    },
    "steps": [
        {
            "id": "open",
            "type": "navigation",
            "action": "goto",
            "target": "https://example.com/login",
            "timeout": 10000,
            "wait_after": 500
        },
        {
            "id": "export",
            "type": "interaction",
            "action": "click",
            "target": "#export",
            "conditions": [
                { "type": "variable", "variable": "logged_in", "operator": "equals", "value": true }
            ],
            "on_error": { "action": "pause" }
        },
        ...
    ]
}
"""

import asyncio
import uuid
from functools import partial
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from app.config import get_settings
from core.constants import ErrorAction, ErrorType, ExecutionState, StepStatus
from core.events import EventEmitter, EventType
from core.exceptions import InvalidStateError, StepCancelledError, ValidationError
from workflow.context import ExecutionContext
from workflow.definition import normalize_definition
from workflow.registry import ExecutionHandle, ExecutionRegistry
from workflow.retry_strategies import RetryStrategy, is_retryable_error
from workflow.step_executor import StepExecutor

logger = structlog.get_logger(__name__)

_STEP_ACTIONS = {a.value for a in ErrorAction}


class WorkflowEngine:
    """Main workflow execution engine.

    Owns one StepExecutor and one ExecutionRegistry. Both share the engine's
    EventEmitter (``engine.events``), so subscribers see workflow and step
    events on a single channel.
    """

    def __init__(
        self,
        executor: Optional[StepExecutor] = None,
        events: Optional[EventEmitter] = None,
        max_concurrent: Optional[int] = None,
        retry_attempts: Optional[int] = None,
    ):
        settings = get_settings()
        if executor is None:
            self.events = events or EventEmitter(settings.EVENT_QUEUE_SIZE)
            executor = StepExecutor(events=self.events)
        else:
            self.events = events or executor.events
            executor.events = self.events
        self.executor = executor

        self.max_concurrent = max_concurrent or settings.WORKFLOW_MAX_CONCURRENT
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.WORKFLOW_RETRY_ATTEMPTS
        self.registry = ExecutionRegistry()
        self._slots = asyncio.Semaphore(self.max_concurrent)

    def register_step_handler(self, step_type: str, handler: Any) -> "WorkflowEngine":
        self.executor.register_step_handler(step_type, handler)
        return self

    # ── Validation ──

    def validate_workflow(self, definition: Any) -> bool:
        """Reject malformed definitions before anything is registered."""
        if not isinstance(definition, dict):
            raise ValidationError("Invalid workflow definition")

        workflow_id = definition.get("id")
        if not workflow_id or not isinstance(workflow_id, str):
            raise ValidationError("Workflow must have a valid id")

        steps = definition.get("steps")
        if not isinstance(steps, list):
            raise ValidationError("Workflow must have steps array")
        if not steps:
            raise ValidationError("Workflow must have at least one step")

        seen: set[str] = set()
        for index, step in enumerate(steps):
            if not isinstance(step, dict):
                raise ValidationError(f"Step {index} must be an object")
            for key in ("id", "type", "action"):
                value = step.get(key)
                if not value or not isinstance(value, str):
                    raise ValidationError(f"Step {index} must have a valid {key}")
            if step["id"] in seen:
                raise ValidationError(f"Duplicate step id '{step['id']}' at index {index}")
            seen.add(step["id"])

        return True

    # ── Execution ──

    def create_execution_context(
        self,
        execution_id: str,
        workflow: dict,
        initial_context: Optional[dict] = None,
    ) -> ExecutionContext:
        initial_context = initial_context or {}
        variables = {**(workflow.get("variables") or {}), **(initial_context.get("variables") or {})}
        return ExecutionContext(
            execution_id=execution_id,
            workflow=workflow,
            variables=variables,
            session_id=initial_context.get("session_id"),
            metadata=initial_context.get("metadata"),
        )

    async def execute_workflow(
        self,
        definition: dict,
        initial_context: Optional[dict] = None,
        execution_id: Optional[str] = None,
    ) -> dict:
        """Run a workflow to completion.

        Args:
            definition: Workflow definition (deep-copied, camelCase keys accepted)
            initial_context: Optional ``variables``, ``session_id`` and ``metadata``
            execution_id: Use this id instead of a generated one

        Returns:
            Summary dict with ``status`` ``completed`` or ``cancelled``

        Raises:
            ValidationError: Definition is malformed; nothing was started
            Exception: The error that made the run fail
        """
        handle = self._accept(definition, initial_context, execution_id)
        return await self._run(handle)

    def start_workflow(
        self,
        definition: dict,
        initial_context: Optional[dict] = None,
        execution_id: Optional[str] = None,
    ) -> tuple[str, asyncio.Task]:
        """Register an execution and run it in a background task.

        The execution is addressable by the returned id as soon as this
        returns. Must be called from a running event loop.
        """
        handle = self._accept(definition, initial_context, execution_id)
        task = asyncio.ensure_future(self._run(handle))
        task.add_done_callback(partial(self._log_background_outcome, handle.execution_id))
        return handle.execution_id, task

    def _accept(self, definition: dict, initial_context: Optional[dict], execution_id: Optional[str]) -> ExecutionHandle:
        self.validate_workflow(definition)
        workflow = normalize_definition(definition)
        context = self.create_execution_context(execution_id or str(uuid.uuid4()), workflow, initial_context)
        return self.registry.add(context)

    @staticmethod
    def _log_background_outcome(execution_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Background workflow task cancelled", execution_id=execution_id)
            return
        error = task.exception()
        if error is not None:
            logger.debug("Background workflow finished with error", execution_id=execution_id, error=str(error))

    async def resume_from_snapshot(self, data: dict) -> dict:
        """Continue a run from ``ExecutionContext.serialize()`` output."""
        context = ExecutionContext.deserialize(data)
        if context.execution_state.is_terminal:
            raise InvalidStateError(f"Cannot resume workflow in state: {context.execution_state.value}")

        self.validate_workflow(context.workflow)
        context.workflow = normalize_definition(context.workflow)
        context.execution_state = ExecutionState.PENDING
        context.resumed_at = datetime.now(timezone.utc)

        logger.info(
            "Resuming workflow from snapshot",
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            current_step=context.current_step,
        )
        handle = self.registry.add(context)
        return await self._run(handle)

    async def _run(self, handle: ExecutionHandle) -> dict:
        context = handle.context
        execution_id = context.execution_id

        try:
            await self._acquire_slot(handle)
            if not context.is_cancelled():
                context.execution_state = ExecutionState.RUNNING
                logger.info(
                    "Workflow execution started",
                    execution_id=execution_id,
                    workflow_id=context.workflow_id,
                    total_steps=context.total_steps,
                    from_step=context.current_step,
                )
                await self.events.emit(EventType.WORKFLOW_STARTED, {
                    "execution_id": execution_id,
                    "workflow_id": context.workflow_id,
                    "session_id": context.session_id,
                    "total_steps": context.total_steps,
                })
                await self._process_steps(handle)

            if context.is_cancelled():
                return self._summary(context)

            context.execution_state = ExecutionState.COMPLETED
            context.end_time = datetime.now(timezone.utc)
            summary = self._summary(context)
            logger.info(
                "Workflow execution completed",
                execution_id=execution_id,
                duration_ms=summary["execution_time"],
            )
            await self.events.emit(EventType.WORKFLOW_COMPLETED, {
                "execution_id": execution_id,
                "workflow_id": context.workflow_id,
                "result": summary,
            })
            return summary

        except Exception as error:
            context.execution_state = ExecutionState.FAILED
            context.end_time = datetime.now(timezone.utc)
            step = context.get_current_step()
            context.add_error(step["id"] if step else None, error, ErrorType.WORKFLOW_ERROR)
            logger.error(
                "Workflow execution failed",
                execution_id=execution_id,
                step_index=context.current_step,
                error=str(error),
            )
            await self.events.emit(EventType.WORKFLOW_FAILED, {
                "execution_id": execution_id,
                "workflow_id": context.workflow_id,
                "error": str(error),
                "error_class": type(error).__name__,
                "step_index": context.current_step,
            })
            raise

        finally:
            self._release_slot(handle)
            # stop_execution may already have removed it
            if self.registry.get(execution_id) is handle:
                self.registry.remove(execution_id)

    async def _process_steps(self, handle: ExecutionHandle) -> None:
        context = handle.context
        steps = context.workflow["steps"]

        while context.current_step < len(steps):
            if context.is_paused():
                await self._wait_while_paused(handle)
            if context.is_cancelled():
                return

            step = steps[context.current_step]

            unmet = self.executor.find_unmet_condition(step, context)
            if unmet is not None:
                logger.info(
                    "Step skipped, condition not met",
                    execution_id=context.execution_id,
                    step_id=step["id"],
                    condition=unmet.get("description") or unmet.get("type"),
                )
                context.add_result(
                    step["id"],
                    None,
                    StepStatus.SKIPPED,
                    metadata={"reason": "condition_not_met", "condition": unmet},
                )
                context.current_step += 1
                continue

            try:
                await self.executor.execute_step(step, context)
            except Exception as error:
                if context.is_cancelled():
                    context.add_error(step["id"], error)
                    return

                outcome = await self._resolve_step_error(handle, step, error)
                if outcome == ErrorAction.SKIP:
                    context.add_result(
                        step["id"],
                        None,
                        StepStatus.SKIPPED,
                        metadata={"reason": "error", "error": str(error)},
                    )
                    context.current_step += 1
                elif outcome == ErrorAction.FAIL:
                    raise
                # retry and pause re-run the same step; stop ends the loop
                continue

            if context.is_cancelled():
                return
            await self.executor.wait_for_step_completion(step, context)
            context.current_step += 1

    async def _resolve_step_error(self, handle: ExecutionHandle, step: dict, error: Exception) -> ErrorAction:
        """Record the failure and decide what the step loop does next."""
        context = handle.context
        decision = await self.executor.handle_step_error(error, step, context)
        action = ErrorAction(decision["action"])

        if action == ErrorAction.STOP:
            reason = "step_cancelled" if isinstance(error, StepCancelledError) else "step_error"
            if not context.is_cancelled():
                await self.stop_execution(context.execution_id, reason)
            return ErrorAction.STOP

        on_error = step.get("on_error")
        explicit = on_error.get("action") if isinstance(on_error, dict) else None
        if explicit not in _STEP_ACTIONS:
            explicit = None

        strategy = self.retry_strategy_for(step, context)
        attempts = len(context.errors_for_step(step["id"]))
        if explicit == ErrorAction.RETRY:
            retry = strategy.has_budget(attempts)
        elif explicit is None:
            retry = self.should_retry_step(step, error, context)
        else:
            retry = False

        if retry:
            delay = strategy.compute_delay(attempts)
            logger.info(
                "Retrying step",
                execution_id=context.execution_id,
                step_id=step["id"],
                attempt=attempts,
                max_retries=strategy.max_retries,
                retry_options=strategy.to_dict(),
                delay=delay,
                error=str(error),
            )
            await self._sleep(handle, delay)
            return ErrorAction.RETRY

        if explicit in (ErrorAction.SKIP, ErrorAction.PAUSE):
            final = ErrorAction(explicit)
        elif explicit != ErrorAction.FAIL and self.should_continue_on_error(step, context):
            final = ErrorAction.SKIP
        else:
            final = ErrorAction.FAIL

        if final == ErrorAction.PAUSE:
            await self._pause(handle, reason="step_error", step_id=step["id"])
        elif final == ErrorAction.SKIP:
            logger.warning(
                "Continuing past failed step",
                execution_id=context.execution_id,
                step_id=step["id"],
                error=str(error),
            )
        return final

    # ── Retry policy ──

    def retry_strategy_for(self, step: dict, context: ExecutionContext) -> RetryStrategy:
        return self.executor.retry_strategy_for(step, context, default_max_retries=self.retry_attempts)

    def should_retry_step(self, step: dict, error: BaseException, context: ExecutionContext) -> bool:
        """Retry while this step has fewer recorded errors than its budget
        and the error looks transient. Cancellation is never retried."""
        if isinstance(error, StepCancelledError):
            return False
        attempts = len(context.errors_for_step(step["id"]))
        return self.retry_strategy_for(step, context).should_retry(attempts, error)

    def should_continue_on_error(self, step: dict, context: ExecutionContext) -> bool:
        return self.executor.should_continue_on_error(step, context)

    @staticmethod
    def is_retryable_error(error: BaseException) -> bool:
        return is_retryable_error(error)

    # ── Concurrency slots ──

    async def _acquire_slot(self, handle: ExecutionHandle) -> bool:
        """Wait for a concurrency slot. Gives up when the execution is stopped."""
        if handle.holds_slot:
            return True

        handle.wakeup.clear()
        while not handle.context.is_cancelled():
            acquire = asyncio.ensure_future(self._slots.acquire())
            wakeup = asyncio.ensure_future(handle.wakeup.wait())
            try:
                await asyncio.wait({acquire, wakeup}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                wakeup.cancel()
                if acquire.done() and not acquire.cancelled() and acquire.exception() is None:
                    handle.holds_slot = True
                else:
                    acquire.cancel()
            if handle.holds_slot:
                return True
            handle.wakeup.clear()
        return False

    def _release_slot(self, handle: ExecutionHandle) -> None:
        if handle.holds_slot:
            handle.holds_slot = False
            self._slots.release()

    async def _wait_while_paused(self, handle: ExecutionHandle) -> None:
        """Park the loop until resume or stop. The slot is freed meanwhile."""
        context = handle.context
        while context.is_paused():
            self._release_slot(handle)
            handle.wakeup.clear()
            logger.info("Workflow execution waiting for resume", execution_id=context.execution_id)
            await handle.wakeup.wait()

        if not context.is_cancelled():
            await self._acquire_slot(handle)

    async def _sleep(self, handle: ExecutionHandle, seconds: float) -> None:
        """Sleep that a stop interrupts."""
        if seconds <= 0 or handle.context.is_cancelled():
            return
        handle.wakeup.clear()
        try:
            await asyncio.wait_for(handle.wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ── Control surface ──

    async def _pause(self, handle: ExecutionHandle, reason: str, step_id: Optional[str] = None) -> None:
        context = handle.context
        context.execution_state = ExecutionState.PAUSED
        context.paused_at = datetime.now(timezone.utc)
        logger.info("Workflow execution paused", execution_id=context.execution_id, reason=reason)
        await self.events.emit(EventType.WORKFLOW_PAUSED, {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "current_step": context.current_step,
            "step_id": step_id,
            "reason": reason,
        })

    async def pause_execution(self, execution_id: str) -> bool:
        """Pause at the next step boundary; the in-flight step finishes."""
        handle = self.registry.require(execution_id)
        state = handle.context.execution_state
        if state != ExecutionState.RUNNING:
            raise InvalidStateError(f"Cannot pause workflow in state: {state.value}")
        await self._pause(handle, reason="user_requested")
        return True

    async def resume_execution(self, execution_id: str) -> bool:
        handle = self.registry.require(execution_id)
        context = handle.context
        if context.execution_state != ExecutionState.PAUSED:
            raise InvalidStateError(f"Cannot resume workflow in state: {context.execution_state.value}")

        context.execution_state = ExecutionState.RUNNING
        context.resumed_at = datetime.now(timezone.utc)
        logger.info("Workflow execution resumed", execution_id=execution_id, current_step=context.current_step)
        await self.events.emit(EventType.WORKFLOW_RESUMED, {
            "execution_id": execution_id,
            "workflow_id": context.workflow_id,
            "current_step": context.current_step,
        })
        handle.wakeup.set()
        return True

    async def stop_execution(self, execution_id: str, reason: str = "user_requested") -> bool:
        """Cancel an execution and drop it from the registry right away.

        The in-flight step is signalled, not killed; its late outcome is
        ignored.
        """
        handle = self.registry.require(execution_id)
        context = handle.context

        context.execution_state = ExecutionState.CANCELLED
        context.end_time = datetime.now(timezone.utc)
        context.cancellation_reason = reason
        self.registry.remove(execution_id)
        handle.wakeup.set()

        step = context.get_current_step()
        if step is not None:
            await self.executor.cancel_step(step["id"], execution_id)

        logger.info("Workflow execution stopped", execution_id=execution_id, reason=reason)
        await self.events.emit(EventType.WORKFLOW_STOPPED, {
            "execution_id": execution_id,
            "workflow_id": context.workflow_id,
            "reason": reason,
        })
        return True

    # ── Status ──

    def get_execution_status(self, execution_id: str) -> Optional[dict]:
        handle = self.registry.get(execution_id)
        if handle is None:
            return None
        context = handle.context
        return {
            "execution_id": execution_id,
            "workflow_id": context.workflow_id,
            "state": context.execution_state.value,
            "current_step": context.current_step,
            "total_steps": context.total_steps,
            "progress": context.get_progress(),
            "start_time": context.start_time.isoformat(),
            "errors": [e.to_dict() for e in context.errors],
            "variables": context.get_all_variables(),
        }

    def get_all_execution_statuses(self) -> list[dict]:
        return [self.get_execution_status(execution_id) for execution_id in self.registry]

    @staticmethod
    def _summary(context: ExecutionContext) -> dict:
        return {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "status": context.execution_state.value,
            "results": [r.to_dict() for r in context.results],
            "execution_time": context.get_execution_duration(),
            "total_steps": context.total_steps,
        }


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine with the built-in handlers."""
    global _engine
    if _engine is None:
        from handlers.registry import register_builtin_handlers

        _engine = WorkflowEngine()
        register_builtin_handlers(_engine.executor)
    return _engine
