"""Last notification, for contexts that open after it was pushed."""

from fastapi import APIRouter, HTTPException

router = APIRouter()

_store = None


def set_store(store):
    global _store
    _store = store


@router.get("/notifications/last")
async def get_last_notification():
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    notification = _store.last_notification()
    return notification.model_dump(mode="json") if notification else None


@router.delete("/notifications/last", status_code=204)
async def clear_last_notification():
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    _store.clear_last_notification()
