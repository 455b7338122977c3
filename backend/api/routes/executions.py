"""Workflow execution control endpoints."""

from fastapi import APIRouter, Depends, status as http_status
from typing import Optional

import structlog

from api.schemas.execution import (
    ExecutionControlResponse,
    ExecutionCreate,
    ExecutionListResponse,
    ExecutionStartResponse,
    ExecutionStatusResponse,
    StopRequest,
)
from app.dependencies import get_background_tasks, get_engine
from core.constants import ExecutionState
from core.exceptions import NotFoundError
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["executions"])


@router.post("", response_model=ExecutionStartResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def start_execution(
    body: ExecutionCreate,
    engine: WorkflowEngine = Depends(get_engine),
    tasks: set = Depends(get_background_tasks),
) -> ExecutionStartResponse:
    """
    Start a workflow execution in the background.

    The definition is validated first; an invalid one is rejected with 422
    and nothing is started.
    """
    execution_id, task = engine.start_workflow(
        body.definition,
        initial_context={
            "variables": body.variables,
            "session_id": body.session_id,
            "metadata": body.metadata,
        },
        execution_id=body.execution_id,
    )
    tasks.add(task)
    task.add_done_callback(tasks.discard)

    logger.info("Execution accepted", execution_id=execution_id, workflow_id=body.definition.get("id"))
    return ExecutionStartResponse(execution_id=execution_id, status=ExecutionState.PENDING.value)


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    state: Optional[str] = None,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionListResponse:
    """
    List registered executions, optionally filtered by state.
    """
    statuses = engine.get_all_execution_statuses()
    if state:
        statuses = [s for s in statuses if s["state"] == state]
    return ExecutionListResponse(
        executions=[ExecutionStatusResponse(**s) for s in statuses],
        total=len(statuses),
    )


@router.get("/{execution_id}", response_model=ExecutionStatusResponse)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionStatusResponse:
    """
    Get the live status of one execution.
    """
    status = engine.get_execution_status(execution_id)
    if status is None:
        raise NotFoundError(f"Workflow {execution_id} not found")
    return ExecutionStatusResponse(**status)


@router.post("/{execution_id}/pause", response_model=ExecutionControlResponse)
async def pause_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionControlResponse:
    """
    Pause at the next step boundary.
    """
    await engine.pause_execution(execution_id)
    return ExecutionControlResponse(execution_id=execution_id, state=ExecutionState.PAUSED.value)


@router.post("/{execution_id}/resume", response_model=ExecutionControlResponse)
async def resume_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionControlResponse:
    """
    Resume a paused execution from its current step.
    """
    await engine.resume_execution(execution_id)
    return ExecutionControlResponse(execution_id=execution_id, state=ExecutionState.RUNNING.value)


@router.post("/{execution_id}/stop", response_model=ExecutionControlResponse)
async def stop_execution(
    execution_id: str,
    body: Optional[StopRequest] = None,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecutionControlResponse:
    """
    Stop an execution. It is removed from the registry immediately.
    """
    reason = body.reason if body else "user_requested"
    await engine.stop_execution(execution_id, reason)
    return ExecutionControlResponse(
        execution_id=execution_id,
        state=ExecutionState.CANCELLED.value,
        reason=reason,
    )
