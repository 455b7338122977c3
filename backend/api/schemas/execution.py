"""Execution control schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class ExecutionCreate(BaseModel):
    """Request to start a workflow execution."""

    definition: Dict[str, Any] = Field(description="Workflow definition (id, steps, variables, settings)")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial variables, override definition variables")
    session_id: Optional[str] = Field(default=None, description="Browser session to run against")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Free-form metadata stored on the context")
    execution_id: Optional[str] = Field(default=None, description="Caller-chosen execution ID")


class ExecutionStartResponse(BaseModel):
    """Accepted execution."""

    execution_id: str = Field(description="Execution ID")
    status: str = Field(description="Execution state right after acceptance")


class ProgressResponse(BaseModel):
    """Step progress of an execution."""

    current: int = Field(description="Index of the current step")
    total: int = Field(description="Number of steps in the workflow")
    percentage: int = Field(description="Rounded completion percentage")
    remaining: int = Field(description="Steps left to run")


class ExecutionStatusResponse(BaseModel):
    """Live status of a registered execution."""

    execution_id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow ID")
    state: str = Field(description="pending, running, paused, completed, failed or cancelled")
    current_step: int = Field(description="Index of the current step")
    total_steps: int = Field(description="Number of steps in the workflow")
    progress: ProgressResponse = Field(description="Step progress")
    start_time: datetime = Field(description="Execution start timestamp")
    errors: List[Dict[str, Any]] = Field(default_factory=list, description="Recorded step and workflow errors")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Current workflow variables")


class ExecutionListResponse(BaseModel):
    """All registered executions."""

    executions: List[ExecutionStatusResponse] = Field(description="List of executions")
    total: int = Field(description="Number of registered executions")


class StopRequest(BaseModel):
    """Request to stop an execution."""

    reason: str = Field(default="user_requested", description="Reason recorded on the context")


class ExecutionControlResponse(BaseModel):
    """Outcome of pause, resume or stop."""

    execution_id: str = Field(description="Execution ID")
    state: str = Field(description="Execution state after the operation")
    reason: Optional[str] = Field(default=None, description="Stop reason, when stopped")


class HandlerInfo(BaseModel):
    """A registered step handler."""

    step_type: str = Field(description="Step type the handler serves")
    display_name: str = Field(description="Human readable name")
    description: str = Field(default="", description="What the handler does")
    actions: List[str] = Field(default_factory=list, description="Supported actions, empty when unrestricted")


class HandlerListResponse(BaseModel):
    """Registered step handlers."""

    handlers: List[HandlerInfo] = Field(description="Handlers by step type")
    total: int = Field(description="Number of registered handlers")
