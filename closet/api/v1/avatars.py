"""Avatar list, selection and deletion."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from closet import avatars as avatar_ops
from closet.errors import JobAlreadyRunning

router = APIRouter()

_store = None


def set_store(store):
    global _store
    _store = store


class SelectAvatarRequest(BaseModel):
    index: int


def _require_store():
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    return _store


@router.get("/avatars")
async def list_avatars():
    store = _require_store()
    avatars = store.avatars()
    return {
        "avatars": [a.model_dump(mode="json") for a in avatars],
        "selected_index": store.selected_avatar_index(),
        "selectable": [i for i, _ in avatar_ops.selectable(store)],
        "partial_avatar_generation": store.partial_avatar_generation(),
    }


@router.put("/avatars/selected")
async def select_avatar(request: SelectAvatarRequest):
    store = _require_store()
    try:
        avatar = avatar_ops.select_avatar(store, request.index)
    except JobAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except avatar_ops.AvatarEditError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"selected_index": request.index, "avatar": avatar.model_dump(mode="json")}


@router.delete("/avatars/{index}")
async def delete_avatar(index: int):
    store = _require_store()
    try:
        remaining = avatar_ops.delete_avatar(store, index)
    except JobAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except avatar_ops.AvatarEditError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {
        "avatars": [a.model_dump(mode="json") for a in remaining],
        "selected_index": store.selected_avatar_index(),
    }
