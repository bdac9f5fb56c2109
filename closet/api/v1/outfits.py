"""Generated outfit gallery."""

from fastapi import APIRouter, HTTPException

from closet.storage import status_store as keys

router = APIRouter()

_store = None


def set_store(store):
    global _store
    _store = store


def _require_store():
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    return _store


@router.get("/outfits")
async def list_outfits():
    store = _require_store()
    return {"outfits": [o.model_dump(mode="json") for o in store.outfits()]}


@router.get("/outfits/latest")
async def latest_outfit():
    store = _require_store()
    outfits = store.outfits()
    if not outfits:
        raise HTTPException(status_code=404, detail="No outfits generated yet")
    return outfits[-1].model_dump(mode="json")


@router.delete("/outfits/{index}", status_code=204)
async def delete_outfit(index: int):
    store = _require_store()
    # inside one transaction so a finishing try-on cannot interleave
    with store.transaction() as txn:
        outfits = txn.get(keys.GENERATED_OUTFITS, [])
        if not 0 <= index < len(outfits):
            raise HTTPException(status_code=404, detail="Outfit not found")
        del outfits[index]
        txn.set(keys.GENERATED_OUTFITS, outfits)


@router.delete("/outfits", status_code=204)
async def clear_outfits():
    store = _require_store()
    store.set(keys.GENERATED_OUTFITS, [])
