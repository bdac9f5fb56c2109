"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from closet.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and basic runtime info."""
    return {
        "status": "healthy",
        "image_model": settings.image_model,
        "data_dir": settings.data_dir,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
