"""
Built-in step handler registration.

Browser handlers (navigation, interaction, extraction...) are supplied by the
host application; only the control handler ships with the engine.
"""

from typing import Any, Dict, List

from handlers.base import StepHandler
from handlers.control import ControlHandler
from workflow.step_executor import StepExecutor

BUILTIN_HANDLERS: Dict[str, type] = {
    ControlHandler.step_type: ControlHandler,
}


def register_builtin_handlers(executor: StepExecutor) -> StepExecutor:
    """Register every built-in handler on the executor."""
    for step_type, handler_class in BUILTIN_HANDLERS.items():
        executor.register_step_handler(step_type, handler_class())
    return executor


def describe_handlers(executor: StepExecutor) -> List[Dict[str, Any]]:
    """List registered handlers with metadata."""
    described = []
    for step_type in executor.get_execution_stats()["handler_types"]:
        handler = executor.get_step_handler(step_type)
        if isinstance(handler, StepHandler):
            info = handler.describe()
            info["step_type"] = step_type
        else:
            info = {
                "step_type": step_type,
                "display_name": type(handler).__name__,
                "description": (type(handler).__doc__ or "").strip(),
                "actions": [],
            }
        described.append(info)
    return described
