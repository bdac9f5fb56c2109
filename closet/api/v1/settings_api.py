"""API key management."""

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from closet.config import settings
from closet.storage.status_store import mask_key

router = APIRouter()

_store = None
_client = None


def set_store(store):
    global _store
    _store = store


def set_client(client):
    global _client
    _client = client


class ApiKeyRequest(BaseModel):
    api_key: str
    validate_key: bool = True


class ApiKeyTestRequest(BaseModel):
    api_key: Optional[str] = None


def _require():
    if _store is None or _client is None:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return _store, _client


@router.get("/settings")
async def get_settings():
    store, _ = _require()
    stored = store.api_key()
    key = stored or settings.api_key
    return {
        "has_api_key": bool(key),
        "api_key_masked": mask_key(key),
        "api_key_source": "store" if stored else ("environment" if key else None),
        "image_model": settings.image_model,
    }


@router.put("/settings/api-key")
async def save_api_key(request: ApiKeyRequest):
    """Store a key, testing it against the service first unless told not to."""
    store, client = _require()
    api_key = request.api_key.strip()
    if not api_key:
        raise HTTPException(status_code=422, detail="Please enter an API key")
    if request.validate_key:
        check = await client.validate_credential(api_key)
        if not check.valid:
            raise HTTPException(status_code=422, detail=check.message)
    store.set_api_key(api_key)
    return {"saved": True, "api_key_masked": mask_key(api_key)}


@router.post("/settings/api-key/test")
async def test_api_key(request: ApiKeyTestRequest):
    store, client = _require()
    api_key = request.api_key or store.api_key() or settings.api_key
    check = await client.validate_credential(api_key)
    return {"valid": check.valid, "message": check.message}
