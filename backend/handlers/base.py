"""
Base step handler interface.

A step handler performs the real-world effect of a workflow step (a browser
action, an API call, a pause). The executor only needs an object with an
``execute(step, context)`` method, sync or async; subclassing StepHandler is
optional but gives logging and a description for the handler listing.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict

import structlog

from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


class StepHandler(ABC):
    """
    Abstract base class for step handlers.

    Subclasses must implement:
    - handle(step, context) -> result
    - step_type (class property)
    - actions (class property)

    Handlers may be invoked more than once for the same step id when the
    engine retries, and should watch ``context.cancel_token`` when they wait
    for long.
    """

    step_type: str = "base"
    display_name: str = "Base Handler"
    description: str = "Abstract step handler"
    actions: tuple = ()

    @abstractmethod
    async def handle(self, step: Dict[str, Any], context: ExecutionContext) -> Any:
        """
        Perform the step.

        Args:
            step: Step definition from the workflow
            context: Execution context of the running workflow

        Returns:
            Any JSON-friendly value; recorded as the step result
        """
        pass

    async def execute(self, step: Dict[str, Any], context: ExecutionContext) -> Any:
        """
        Run the step with timing and logging.

        This is the entry point called by the step executor. Errors are
        logged and re-raised so the engine can classify them.
        """
        start = time.monotonic()
        action = step.get("action")
        if self.actions and action not in self.actions:
            raise ValueError(f"Unsupported {self.step_type} action: {action}")

        try:
            result = await self.handle(step, context)
        except Exception as e:
            logger.error(
                "Step handler failed",
                step_type=self.step_type,
                action=action,
                step_id=step.get("id"),
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise

        logger.debug(
            "Step handler completed",
            step_type=self.step_type,
            action=action,
            step_id=step.get("id"),
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return result

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        return {
            "step_type": cls.step_type,
            "display_name": cls.display_name,
            "description": cls.description,
            "actions": list(cls.actions),
        }
