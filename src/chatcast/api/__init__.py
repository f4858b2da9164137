"""HTTP API, mounted under /api/v1 by main.py.

Learn: Auth is attached when the channels router is included, so every
publish and inspection route requires a bearer token without each
handler declaring it. Health stays open for load balancers.
"""

from fastapi import APIRouter, Depends

from chatcast.api.channels import router as channels_router
from chatcast.api.health import router as health_router
from chatcast.auth.dependencies import get_current_user

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(
    channels_router,
    tags=["messages", "channels"],
    dependencies=[Depends(get_current_user)],
)
