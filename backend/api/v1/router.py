"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import executions, handlers

api_v1_router = APIRouter()

# Execution control
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Registered step handlers
api_v1_router.include_router(
    handlers.router,
    prefix="/handlers",
    tags=["Handlers"],
)
