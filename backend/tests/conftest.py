"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Environment overrides (fast timeouts and retry delays)
- Fake step handlers (recording, failing, hanging, flaky)
- StepExecutor / WorkflowEngine fixtures with an event recorder
- FastAPI test client (httpx.AsyncClient)
"""

import asyncio
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("STEP_DEFAULT_TIMEOUT_MS", "2000")
os.environ.setdefault("STEP_RETRY_DELAY_MS", "0")
os.environ.setdefault("WORKFLOW_RETRY_ATTEMPTS", "3")
os.environ.setdefault("WORKFLOW_MAX_CONCURRENT", "5")

from core.events import EventType  # noqa: E402
from workflow.context import ExecutionContext  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.step_executor import StepExecutor  # noqa: E402
from handlers.control import ControlHandler  # noqa: E402


# ---------------------------------------------------------------------------
# Fake step handlers
# ---------------------------------------------------------------------------

class RecordingHandler:
    """Succeeds; returns ``step["value"]`` and stores ``step["target"]`` as a variable."""

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, step: dict, context: ExecutionContext) -> Any:
        self.calls.append(step["id"])
        if step.get("store_as"):
            context.set_variable(step["store_as"], step.get("value"))
        return {"step": step["id"], "value": step.get("value")}


class SyncHandler:
    """Plain synchronous execute()."""

    def execute(self, step: dict, context: ExecutionContext) -> Any:
        return f"sync:{step['id']}"


class FailingHandler:
    """Always raises with the step's ``value`` as message."""

    def __init__(self):
        self.calls = 0

    async def execute(self, step: dict, context: ExecutionContext) -> Any:
        self.calls += 1
        raise RuntimeError(step.get("value") or "Invalid selector syntax")


class HangingHandler:
    """Never finishes on its own; records whether it saw the cancel token."""

    def __init__(self):
        self.started = asyncio.Event()
        self.saw_cancel = False

    async def execute(self, step: dict, context: ExecutionContext) -> Any:
        self.started.set()
        token = context.cancel_token
        await token.wait()
        self.saw_cancel = True
        return "cancelled"


class FlakyHandler:
    """Fails ``failures`` times with a retryable message, then succeeds."""

    def __init__(self, failures: int = 2, message: str = "Network connection reset"):
        self.failures = failures
        self.message = message
        self.calls = 0

    async def execute(self, step: dict, context: ExecutionContext) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(self.message)
        return {"attempt": self.calls}


class GateHandler:
    """Blocks each call until ``release()``; used to hold a step in flight."""

    def __init__(self):
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()
        self.calls = 0

    def release(self) -> None:
        self._gate.set()

    async def execute(self, step: dict, context: ExecutionContext) -> Any:
        self.calls += 1
        self.entered.set()
        await self._gate.wait()
        return step["id"]


class EventRecorder:
    """Subscribes to every event type and keeps ``(type, payload)`` pairs."""

    def __init__(self, events):
        self.events: list[tuple[EventType, dict]] = []
        for event_type in EventType:
            events.on(event_type, lambda payload, t=event_type: self.events.append((t, payload)))

    def of(self, event_type: EventType) -> list[dict]:
        return [payload for t, payload in self.events if t == event_type]

    def types(self) -> list[EventType]:
        return [t for t, _ in self.events]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


# ---------------------------------------------------------------------------
# Executor / engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def recording_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def failing_handler() -> FailingHandler:
    return FailingHandler()


@pytest.fixture
def executor(recording_handler, failing_handler) -> StepExecutor:
    """Executor with fake handlers for every browser step category."""
    ex = StepExecutor(default_timeout_ms=1000, retry_delay_ms=0)
    for step_type in ("navigation", "interaction", "extraction", "validation", "wait"):
        ex.register_step_handler(step_type, recording_handler)
    ex.register_step_handler("broken", failing_handler)
    ex.register_step_handler("control", ControlHandler())
    return ex


@pytest.fixture
def context() -> ExecutionContext:
    workflow = {
        "id": "wf-1",
        "steps": [
            {"id": "s1", "type": "navigation", "action": "goto", "target": "https://example.com"},
            {"id": "s2", "type": "interaction", "action": "click", "target": "#go"},
            {"id": "s3", "type": "extraction", "action": "text", "target": "h1"},
        ],
    }
    return ExecutionContext("exec-1", workflow, variables={"count": 10, "name": "alice"})


@pytest.fixture
def engine(executor) -> WorkflowEngine:
    return WorkflowEngine(executor=executor, max_concurrent=5, retry_attempts=3)


@pytest.fixture
def recorder(engine) -> EventRecorder:
    return EventRecorder(engine.events)


def make_workflow(*steps: dict, **extra: Any) -> dict:
    """Workflow definition with sensible ids."""
    return {"id": extra.pop("id", "wf-test"), "steps": list(steps), **extra}


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(engine):
    """FastAPI app wired to the test engine."""
    from app.main import create_app

    test_app = create_app(engine=engine)
    yield test_app

    for execution_id in engine.registry:
        if execution_id in engine.registry:
            await engine.stop_execution(execution_id, reason="test_teardown")


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
