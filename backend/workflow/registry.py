"""Active-execution registry.

One registry belongs to one ``WorkflowEngine``. It maps ``execution_id`` to a
handle carrying the execution's context and the wakeup event its step
loop waits on while paused or queued for a concurrency slot. Mutated only
from the event loop thread.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterator, Optional

from core.exceptions import InvalidStateError, NotFoundError
from workflow.context import ExecutionContext


@dataclass
class ExecutionHandle:
    """Registry entry for one execution."""
    context: ExecutionContext
    # Set on resume and stop; wakes a loop that is paused, sleeping or queued
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    holds_slot: bool = False

    @property
    def execution_id(self) -> str:
        return self.context.execution_id


class ExecutionRegistry:
    """Executions that have been accepted and not yet finished."""

    def __init__(self):
        self._executions: dict[str, ExecutionHandle] = {}

    def add(self, context: ExecutionContext) -> ExecutionHandle:
        if context.execution_id in self._executions:
            raise InvalidStateError(f"Workflow {context.execution_id} is already running")
        handle = ExecutionHandle(context=context)
        self._executions[context.execution_id] = handle
        return handle

    def get(self, execution_id: str) -> Optional[ExecutionHandle]:
        return self._executions.get(execution_id)

    def require(self, execution_id: str) -> ExecutionHandle:
        handle = self._executions.get(execution_id)
        if handle is None:
            raise NotFoundError(f"Workflow {execution_id} not found")
        return handle

    def remove(self, execution_id: str) -> bool:
        """Drop an execution. Safe to call more than once."""
        return self._executions.pop(execution_id, None) is not None

    def contexts(self) -> list[ExecutionContext]:
        return [handle.context for handle in self._executions.values()]

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._executions

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._executions))

    def __len__(self) -> int:
        return len(self._executions)
