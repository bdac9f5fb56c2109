"""Serve stored image blobs by ref."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

router = APIRouter()

_blobs = None


def set_blobs(blobs):
    global _blobs
    _blobs = blobs


@router.get("/images/{image_ref}")
async def get_image(image_ref: str):
    if _blobs is None:
        raise HTTPException(status_code=503, detail="Image store not initialized")
    path = _blobs.path_for(image_ref)
    if path is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(path, media_type=_blobs.mime_type(image_ref))
