from fastapi import APIRouter

from app.api.routes.health import router as health_router
from app.api.routes.monitor import router as monitor_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)
api_router.include_router(monitor_router)

# Versioned routes for long-term API evolution.
v1_router.include_router(monitor_router)
api_router.include_router(v1_router)
