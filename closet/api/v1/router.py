"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from closet.api.v1.health import router as health_router
from closet.api.v1.jobs import router as jobs_router, status_router
from closet.api.v1.wardrobe import router as wardrobe_router
from closet.api.v1.avatars import router as avatars_router
from closet.api.v1.outfits import router as outfits_router
from closet.api.v1.settings_api import router as settings_router
from closet.api.v1.notifications import router as notifications_router
from closet.api.v1.events import router as events_router
from closet.api.v1.images import router as images_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(wardrobe_router, tags=["wardrobe"])
v1_router.include_router(avatars_router, tags=["avatars"])
v1_router.include_router(outfits_router, tags=["outfits"])
v1_router.include_router(settings_router, tags=["settings"])
v1_router.include_router(notifications_router, tags=["notifications"])
v1_router.include_router(events_router, tags=["events"])
v1_router.include_router(images_router, tags=["images"])

# GET /health and GET /status at root, for monitors that only know the host
root_router = APIRouter()
root_router.include_router(health_router, tags=["health"])
root_router.include_router(status_router, tags=["status"])
