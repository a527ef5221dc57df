from fastapi import APIRouter

from .analysis import router as analysis_router
from .health import router as health_router


# Caller identity is resolved per route (X-User-Id); health stays public
api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(analysis_router)
