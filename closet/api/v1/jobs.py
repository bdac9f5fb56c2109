"""Job start API and status polling.

This is the narrow surface UI contexts use to request work. Every start
goes through the coordinator, which is the only writer of job state.
"""

from typing import List, Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from closet.errors import JobAlreadyRunning, PreconditionFailed
from closet.jobs.models import SizePreference, utcnow

router = APIRouter()
status_router = APIRouter()

# These will be set by main.py during lifespan
_coordinator = None
_store = None


def set_coordinator(coordinator):
    global _coordinator
    _coordinator = coordinator


def set_store(store):
    global _store
    _store = store


class TryOnRequest(BaseModel):
    clothing_refs: List[str]
    size_preference: SizePreference = SizePreference.FIT


def start_error(exc: Exception) -> HTTPException:
    """Map a rejected start onto an HTTP error."""
    if isinstance(exc, JobAlreadyRunning):
        return HTTPException(status_code=409, detail="A generation is already in progress")
    title, message = exc.title_and_message()
    return HTTPException(status_code=422, detail={
        "reason": exc.reason,
        "title": title,
        "message": message,
        "routes_to_settings": exc.routes_to_settings,
    })


def _require_coordinator():
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Job coordinator not initialized")
    return _coordinator


def _job_response(job):
    return {
        "job_id": job.id,
        "kind": job.kind.value,
        "status": job.status.value,
        "message": "Generation started. Poll GET /status for progress.",
    }


async def _read_photos(photos: List[UploadFile]) -> List[bytes]:
    data = []
    for photo in photos:
        if photo.content_type and not photo.content_type.startswith("image/"):
            raise HTTPException(status_code=400, detail=f"{photo.filename} is not an image")
        data.append(await photo.read())
    return data


@status_router.get("/status")
async def get_generation_status():
    """The in-progress flag as any context sees it."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    status = _store.status()
    return {
        "inProgress": status.in_progress,
        "startTime": status.start_time.isoformat() if status.start_time else None,
        "elapsedSeconds": status.elapsed_seconds(utcnow()),
        "job": status.job.model_dump(mode="json") if status.job else None,
        "partialAvatarGeneration": status.partial_avatar_generation,
    }


@router.post("/jobs/tryon", status_code=202)
async def start_tryon(request: TryOnRequest):
    """Start a try-on. One clothing ref is single-item, more is multi-item."""
    coordinator = _require_coordinator()
    try:
        job = await coordinator.request_tryon(request.clothing_refs, request.size_preference)
    except (JobAlreadyRunning, PreconditionFailed) as exc:
        raise start_error(exc)
    return _job_response(job)


@router.post("/jobs/avatars", status_code=202)
async def start_avatar_batch(photos: List[UploadFile] = File(...)):
    """Start generating the avatar pose set from uploaded photos."""
    coordinator = _require_coordinator()
    raw = await _read_photos(photos)
    try:
        job = await coordinator.request_avatar_batch(raw)
    except (JobAlreadyRunning, PreconditionFailed) as exc:
        raise start_error(exc)
    return _job_response(job)


@router.post("/jobs/avatars/retry", status_code=202)
async def retry_failed_avatars(
    photos: Optional[List[UploadFile]] = File(None),
    poses: Optional[List[int]] = Form(None),
):
    """Regenerate failed poses. Without photos, the stored source photos are reused."""
    coordinator = _require_coordinator()
    raw = await _read_photos(photos) if photos else None
    try:
        job = await coordinator.request_avatar_retry(photos=raw, poses=poses)
    except (JobAlreadyRunning, PreconditionFailed) as exc:
        raise start_error(exc)
    return _job_response(job)


@router.get("/jobs/current")
async def get_current_job():
    if _store is None:
        raise HTTPException(status_code=503, detail="Status store not initialized")
    job = _store.current_job()
    if job is None:
        raise HTTPException(status_code=404, detail="No job has run yet")
    return job.model_dump(mode="json")


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    coordinator = _require_coordinator()
    job = await coordinator.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump(mode="json")
