"""Step handler listing endpoint."""

from fastapi import APIRouter, Depends

from api.schemas.execution import HandlerInfo, HandlerListResponse
from app.dependencies import get_engine
from handlers.registry import describe_handlers
from workflow.engine import WorkflowEngine

router = APIRouter(tags=["handlers"])


@router.get("", response_model=HandlerListResponse)
async def list_handlers(engine: WorkflowEngine = Depends(get_engine)) -> HandlerListResponse:
    """
    List the step types the engine can dispatch.
    """
    handlers = [HandlerInfo(**info) for info in describe_handlers(engine.executor)]
    return HandlerListResponse(handlers=handlers, total=len(handlers))
