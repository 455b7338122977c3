"""Workflow Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from workflow.engine import WorkflowEngine, get_workflow_engine

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()
    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        handler_types=app.state.engine.executor.get_execution_stats()["handler_types"],
    )
    yield
    # Shutdown: stop whatever is still registered
    engine: WorkflowEngine = app.state.engine
    stopped = 0
    for execution_id in engine.registry:
        if execution_id in engine.registry:
            await engine.stop_execution(execution_id, reason="shutdown")
            stopped += 1
    logger.info("Application shutting down", stopped_executions=stopped)


def create_app(engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Engine to expose; defaults to the process-wide singleton
            with the built-in handlers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Control API for the sequential workflow execution engine.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.engine = engine or get_workflow_engine()
    app.state.execution_tasks = set()

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check, unversioned for load balancers and k8s probes
    app.include_router(health.router)

    # Versioned control API
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
