"""FastAPI dependency injection functions."""

from fastapi import Request

from workflow.engine import WorkflowEngine


def get_engine(request: Request) -> WorkflowEngine:
    """The engine owned by the application (``app.state.engine``)."""
    return request.app.state.engine


def get_background_tasks(request: Request) -> set:
    """Tasks of executions started over HTTP, kept referenced until done."""
    return request.app.state.execution_tasks
