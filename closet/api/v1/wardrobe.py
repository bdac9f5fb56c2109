"""Wardrobe API: list, add from upload or URL, remove."""

from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from closet.errors import CompressionError, NetworkError
from closet.jobs.models import SourceMetadata

router = APIRouter()

_wardrobe = None


def set_wardrobe(wardrobe):
    global _wardrobe
    _wardrobe = wardrobe


class ExternalImageRequest(BaseModel):
    url: str
    source_metadata: Optional[SourceMetadata] = None


def _require_wardrobe():
    if _wardrobe is None:
        raise HTTPException(status_code=503, detail="Wardrobe not initialized")
    return _wardrobe


def _add_response(result):
    return {
        "added": result.added,
        "item": result.item.model_dump(mode="json"),
        "message": "Added to your wardrobe" if result.added
        else "This item already exists in your wardrobe",
    }


@router.get("/wardrobe")
async def list_clothing():
    wardrobe = _require_wardrobe()
    return {"items": [item.model_dump(mode="json") for item in wardrobe.items()]}


@router.post("/wardrobe")
async def add_clothing_upload(
    file: UploadFile = File(...),
    source_url: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
):
    wardrobe = _require_wardrobe()
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="File must be an image")
    metadata = SourceMetadata(url=source_url, title=title) if (source_url or title) else None
    try:
        result = await wardrobe.add_upload(await file.read(), metadata)
    except CompressionError as exc:
        raise HTTPException(status_code=422, detail=exc.title_and_message()[1])
    return _add_response(result)


@router.post("/wardrobe/external")
async def add_clothing_from_url(request: ExternalImageRequest):
    """Save an image found on an external page."""
    wardrobe = _require_wardrobe()
    try:
        result = await wardrobe.add_external_image(request.url, request.source_metadata)
    except NetworkError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except CompressionError as exc:
        raise HTTPException(status_code=422, detail=exc.title_and_message()[1])
    return _add_response(result)


@router.delete("/wardrobe/{image_ref}", status_code=204)
async def remove_clothing(image_ref: str):
    wardrobe = _require_wardrobe()
    if not wardrobe.remove(image_ref):
        raise HTTPException(status_code=404, detail="Clothing item not found")
