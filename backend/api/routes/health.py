"""Health check endpoint.

Liveness probe plus a snapshot of engine load.
"""

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.config import get_settings
from app.dependencies import get_engine
from workflow.engine import WorkflowEngine

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def health_check(engine: WorkflowEngine = Depends(get_engine)) -> dict[str, Any]:
    """
    Get API status, version and engine load.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "engine": {
            "active_executions": len(engine.registry),
            "max_concurrent": engine.max_concurrent,
            **engine.executor.get_execution_stats(),
        },
    }
