"""Lifecycle event notification.

The engine and step executor publish lifecycle events through an
``EventEmitter``. Consumers either register callbacks (sync or async) or
open a bounded queue with ``stream()``, optionally filtered to a single
execution. Listener failures are logged and never break the workflow.

Usage:
    events = EventEmitter()
    events.on(EventType.STEP_COMPLETED, lambda payload: print(payload["step_id"]))

    queue = events.stream(execution_id="exec-1", maxsize=50)
    event_type, payload = await queue.get()
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Lifecycle events published by the engine and the step executor."""

    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_STOPPED = "workflow_stopped"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_ERROR = "step_error"
    STEP_CANCELLED = "step_cancelled"


class _Stream:
    """A bounded queue subscribed to the emitter."""

    def __init__(self, maxsize: int, execution_id: Optional[str]):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.execution_id = execution_id
        self.dropped = 0

    def offer(self, event_type: EventType, payload: dict) -> None:
        if self.execution_id and payload.get("execution_id") != self.execution_id:
            return
        if self.queue.full():
            # Oldest event makes room; slow consumers never block the engine
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait((event_type, payload))


class EventEmitter:
    """Subscriber list keyed by event type."""

    def __init__(self, default_queue_size: int = 100):
        self._listeners: dict[EventType, list[Callable]] = {}
        self._streams: list[_Stream] = []
        self._default_queue_size = default_queue_size

    def on(self, event_type: EventType, callback: Callable) -> Callable:
        """Register a callback(payload) for an event type."""
        self._listeners.setdefault(EventType(event_type), []).append(callback)
        return callback

    def off(self, event_type: EventType, callback: Callable) -> bool:
        """Remove a previously registered callback."""
        listeners = self._listeners.get(EventType(event_type), [])
        if callback in listeners:
            listeners.remove(callback)
            return True
        return False

    def stream(self, execution_id: Optional[str] = None, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Open a bounded queue receiving ``(event_type, payload)`` tuples."""
        stream = _Stream(maxsize or self._default_queue_size, execution_id)
        self._streams.append(stream)
        return stream.queue

    def close_stream(self, queue: asyncio.Queue) -> None:
        self._streams = [s for s in self._streams if s.queue is not queue]

    def listener_count(self, event_type: EventType) -> int:
        return len(self._listeners.get(EventType(event_type), []))

    async def emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        """Deliver an event to every listener and stream."""
        event_type = EventType(event_type)

        for stream in self._streams:
            stream.offer(event_type, payload)

        for callback in list(self._listeners.get(event_type, [])):
            try:
                outcome = callback(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    "Event listener failed",
                    event_type=event_type.value,
                    error=str(e),
                )
