"""Control step handler for steps that need no browser.

Actions:
- delay: pause the workflow (fixed, random or variable duration)
- checkpoint: snapshot step index and variables
- set_variable: write one or more workflow variables
- log: emit a message into the engine log
"""

import asyncio
import random
import time
from typing import Any, Dict, Optional

import structlog

from app.config import get_settings
from core.constants import StepType
from handlers.base import StepHandler
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


class ControlHandler(StepHandler):
    """Built-in handler for ``type: control`` steps."""

    step_type = StepType.CONTROL.value
    display_name = "Control"
    description = "Delays, checkpoints, variable assignment and log messages"
    actions = ("delay", "checkpoint", "set_variable", "log")

    def __init__(self, max_delay_ms: Optional[int] = None):
        self.max_delay_ms = max_delay_ms or get_settings().CONTROL_MAX_DELAY_MS

    async def handle(self, step: Dict[str, Any], context: ExecutionContext) -> Any:
        action = step["action"]
        if action == "delay":
            return await self.handle_delay(step, context)
        if action == "checkpoint":
            return self.handle_checkpoint(step, context)
        if action == "set_variable":
            return self.handle_set_variable(step, context)
        return self.handle_log(step, context)

    def _delay_ms(self, step: Dict[str, Any], context: ExecutionContext) -> int:
        delay_type = step.get("delay_type", "fixed")
        if delay_type == "random":
            low = step.get("min", 1000)
            high = step.get("max", 5000)
            return random.randint(int(low), int(high))
        if delay_type == "variable":
            try:
                return int(context.get_variable(step.get("variable")))
            except (TypeError, ValueError):
                return 1000
        if delay_type == "fixed":
            return int(step.get("duration") or step.get("value") or 1000)
        return 1000

    async def handle_delay(self, step: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        """Sleep for the requested time, waking early on cancellation."""
        requested = self._delay_ms(step, context)
        delay_ms = max(0, min(requested, self.max_delay_ms))

        start = time.monotonic()
        token = context.cancel_token
        if token is None:
            await asyncio.sleep(delay_ms / 1000)
        else:
            try:
                await asyncio.wait_for(token.wait(), timeout=delay_ms / 1000)
            except asyncio.TimeoutError:
                pass

        return {
            "delay_type": step.get("delay_type", "fixed"),
            "requested_delay": requested,
            "actual_delay": int((time.monotonic() - start) * 1000),
            "completed": not (token is not None and token.cancelled),
        }

    def handle_checkpoint(self, step: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        description = step.get("description") or f"Checkpoint at step {step['id']}"
        checkpoint = context.create_checkpoint(description)
        return {
            "checkpoint_id": checkpoint.id,
            "description": checkpoint.description,
            "timestamp": checkpoint.timestamp.isoformat(),
            "step_index": checkpoint.step_index,
        }

    def handle_set_variable(self, step: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        variables = step.get("variables")
        if isinstance(variables, dict):
            context.update_variables(variables)
            return {"variables_set": list(variables.keys())}

        name = step.get("target")
        if not name:
            raise ValueError("set_variable step requires target or variables")
        context.set_variable(name, step.get("value"))
        return {"variables_set": [name]}

    def handle_log(self, step: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        message = step.get("value", "")
        level = step.get("level", "info")
        log = getattr(logger, level, logger.info)
        log(
            "Workflow log step",
            message=message,
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            step_id=step.get("id"),
        )
        return {"message": message, "level": level}
