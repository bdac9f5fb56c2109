"""Job coordinator: the single writer of generation-job state.

Runs in the background service. UI contexts only ask it to start work
(``request_tryon``, ``request_avatar_batch``, ``request_avatar_retry``);
everything else about a job is written here.

State machine per job:

    Idle -> Running -> Succeeded | Failed

``Running`` is entered through an atomic check-and-set of the store's
``generationInProgress`` flag, so a second start is rejected while one is
running. Each job's pipeline is raced against its timeout budget with
``asyncio.wait_for``; the losing pipeline is cancelled and its results
are never applied. Every exit path clears the flag.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from closet.config import settings
from closet.errors import (
    CompressionError,
    GenerationError,
    JobAlreadyRunning,
    JobTimeout,
    NoImageInResponse,
    PreconditionFailed,
    error_kind_for,
)
from closet.generation import prompts
from closet.generation.client import GenerationClient
from closet.imaging.preprocess import (
    FAST_TRANSPORT,
    HIGH_FIDELITY,
    CompressionProfile,
    EncodedImage,
    StoredImage,
    preprocess,
    to_jpeg,
)
from closet.jobs.dispatcher import JobDispatcher
from closet.jobs.models import (
    AvatarRecord,
    AvatarState,
    GenerationJob,
    JobInputs,
    JobKind,
    JobStatus,
    Notification,
    OutfitRecord,
    SizePreference,
    utcnow,
)
from closet.notifications import (
    NotificationHub,
    error_notification,
    partial_notification,
    precondition_notification,
    success_notification,
)
from closet.storage import status_store as keys
from closet.storage.blobs import ImageBlobStore
from closet.storage.status_store import StatusStore, StoreTransaction, clamp_index

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """What a pipeline produced; applied only if the job still owns the flag."""
    apply: Callable[[StoreTransaction], None]
    notification: Notification
    result: Dict = field(default_factory=dict)


class JobCoordinator(JobDispatcher):
    """Runs one generation job at a time and owns its persisted state."""

    def __init__(
        self,
        store: StatusStore,
        blobs: ImageBlobStore,
        client: GenerationClient,
        hub: Optional[NotificationHub] = None,
        tryon_timeout: Optional[float] = None,
        avatar_timeout: Optional[float] = None,
        min_avatar_photos: Optional[int] = None,
    ):
        self._store = store
        self._blobs = blobs
        self._client = client
        self._hub = hub or NotificationHub()
        self._tryon_timeout = tryon_timeout if tryon_timeout is not None else settings.tryon_timeout_seconds
        self._avatar_timeout = avatar_timeout if avatar_timeout is not None else settings.avatar_timeout_seconds
        self._min_avatar_photos = (
            min_avatar_photos if min_avatar_photos is not None else settings.min_avatar_photos
        )
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._jobs: Dict[str, GenerationJob] = {}
        # raw uploads for queued avatar jobs; never persisted as-is
        self._uploads: Dict[str, List[bytes]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    # ------------------------------------------------------------------
    # Dispatcher interface
    # ------------------------------------------------------------------

    async def submit(self, job: GenerationJob) -> str:
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        if not self._store.try_begin_generation(job):
            job.status = JobStatus.IDLE
            job.started_at = None
            raise JobAlreadyRunning("A generation is already in progress")
        self._jobs[job.id] = job
        logger.info("Job %s (%s) started", job.id, job.kind.value)
        self._hub.publish_status(True, job.started_at.isoformat())
        await self._queue.put(job.id)
        return job.id

    async def get_status(self, job_id: str) -> Optional[GenerationJob]:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        current = self._store.current_job()
        if current is not None and current.id == job_id:
            return current
        return None

    async def start(self) -> None:
        self.recover_interrupted()
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def recover_interrupted(self) -> Optional[GenerationJob]:
        """Fail a job left Running by a previous process, so the flag cannot stay stuck."""
        status = self._store.status()
        if not status.in_progress:
            return None
        job = status.job
        if job is None or job.status != JobStatus.RUNNING:
            self._store.clear_generation_flag()
            return None
        logger.warning("Job %s was interrupted by a restart; marking it failed", job.id)
        self._fail(job, GenerationError("Interrupted by service restart"))
        return job

    # ------------------------------------------------------------------
    # Caller-facing start API
    # ------------------------------------------------------------------

    def _api_key(self) -> Optional[str]:
        return self._store.api_key() or settings.api_key

    def _warn(self, exc: PreconditionFailed) -> PreconditionFailed:
        self._notify(precondition_notification(exc))
        return exc

    def _require_credential(self) -> None:
        if not self._api_key():
            raise self._warn(PreconditionFailed("missing_credential"))

    def _tryon_avatar(self) -> AvatarRecord:
        avatars = self._store.avatars()
        if not avatars:
            raise self._warn(PreconditionFailed("missing_avatar"))
        index = clamp_index(self._store.get(keys.SELECTED_AVATAR_INDEX, 0), len(avatars))
        selected = avatars[index]
        if selected.usable and self._blobs.exists(selected.image_ref):
            return selected
        for avatar in avatars:
            if avatar.usable and self._blobs.exists(avatar.image_ref):
                logger.info("Selected avatar %d unusable, using pose %s", index, avatar.pose_id)
                return avatar
        raise self._warn(PreconditionFailed("invalid_avatar"))

    async def request_tryon(
        self,
        clothing_refs: Sequence[str],
        size_preference: SizePreference = SizePreference.FIT,
    ) -> GenerationJob:
        """Start a single- or multi-item try-on with the selected avatar."""
        self._require_credential()
        avatar = self._tryon_avatar()
        clothing_refs = list(dict.fromkeys(clothing_refs))
        if not clothing_refs:
            raise self._warn(PreconditionFailed("empty_outfit"))
        if not all(self._blobs.exists(ref) for ref in clothing_refs):
            raise self._warn(PreconditionFailed("unknown_clothing"))

        kind = JobKind.SINGLE_ITEM_TRYON if len(clothing_refs) == 1 else JobKind.MULTI_ITEM_TRYON
        job = GenerationJob(
            kind=kind,
            timeout_budget=self._tryon_timeout,
            inputs=JobInputs(
                subject_refs=[avatar.image_ref],
                garment_refs=clothing_refs,
                size_preference=size_preference,
            ),
        )
        await self.submit(job)
        return job

    async def request_avatar_batch(self, photos: Sequence[bytes]) -> GenerationJob:
        """Start generating the full pose set from freshly uploaded photos."""
        self._require_credential()
        if len(photos) < self._min_avatar_photos:
            raise self._warn(PreconditionFailed("not_enough_photos", n=self._min_avatar_photos))
        job = GenerationJob(kind=JobKind.AVATAR_BATCH, timeout_budget=self._avatar_timeout)
        self._uploads[job.id] = list(photos)
        try:
            await self.submit(job)
        except JobAlreadyRunning:
            self._uploads.pop(job.id, None)
            raise
        return job

    async def request_avatar_retry(
        self,
        photos: Optional[Sequence[bytes]] = None,
        poses: Optional[Sequence[int]] = None,
    ) -> GenerationJob:
        """Re-run only failed poses, against new photos or the persisted source photos."""
        self._require_credential()
        avatars = self._store.avatars()
        failed = [i for i, a in enumerate(avatars) if a.state == AvatarState.FAILED]
        if poses:
            failed = [i for i in failed if i in set(poses)]
        if not failed:
            raise self._warn(PreconditionFailed("no_failed_poses"))
        if photos:
            if len(photos) < self._min_avatar_photos:
                raise self._warn(PreconditionFailed("not_enough_photos", n=self._min_avatar_photos))
        else:
            refs = self._store.avatar_source_photos()
            if not refs or not all(self._blobs.exists(ref) for ref in refs):
                raise self._warn(PreconditionFailed("missing_source_photos"))

        job = GenerationJob(
            kind=JobKind.AVATAR_BATCH,
            timeout_budget=self._avatar_timeout,
            inputs=JobInputs(
                subject_refs=[] if photos else self._store.avatar_source_photos(),
                retry_poses=failed,
            ),
        )
        if photos:
            self._uploads[job.id] = list(photos)
        try:
            await self.submit(job)
        except JobAlreadyRunning:
            self._uploads.pop(job.id, None)
            raise
        return job

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _worker_loop(self) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            job = self._jobs.get(job_id)
            if job is None:
                continue

            try:
                await self._execute(job)
            except asyncio.CancelledError:
                self._fail(job, GenerationError("Service shutting down"))
                raise
            except Exception:
                # store failures; the job must not keep the flag
                logger.error("Job %s crashed:\n%s", job.id, traceback.format_exc())
                self._store.clear_generation_flag()
                self._hub.publish_status(False, None)
            finally:
                self._uploads.pop(job.id, None)

    async def _execute(self, job: GenerationJob) -> None:
        try:
            outcome = await asyncio.wait_for(self._run_pipeline(job), timeout=job.timeout_budget)
        except asyncio.TimeoutError:
            logger.warning("Job %s timed out after %.0fs", job.id, job.timeout_budget)
            self._fail(job, JobTimeout(f"Generation timed out after {job.timeout_budget:.0f}s"))
            return
        except GenerationError as exc:
            logger.warning("Job %s failed: %s", job.id, exc.kind.value)
            self._fail(job, exc)
            return
        except Exception as exc:
            logger.error("Job %s failed unexpectedly:\n%s", job.id, traceback.format_exc())
            self._fail(job, exc)
            return

        job.status = JobStatus.SUCCEEDED
        job.result = outcome.result
        job.completed_at = utcnow()
        if self._store.finish_generation(job, outcome.apply):
            logger.info("Job %s succeeded", job.id)
            self._hub.publish_status(False, None)
            self._notify(outcome.notification)

    def _fail(self, job: GenerationJob, exc: BaseException) -> None:
        job.status = JobStatus.FAILED
        job.error_kind = error_kind_for(exc)
        job.error = str(exc) or type(exc).__name__
        job.completed_at = utcnow()
        if self._store.finish_generation(job):
            self._hub.publish_status(False, None)
            self._notify(error_notification(exc, job))

    def _notify(self, notification: Notification) -> None:
        self._store.set_last_notification(notification)
        self._hub.publish_notification(notification)

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    async def _compress(self, raw: bytes, profile: CompressionProfile) -> EncodedImage:
        # Pillow work runs in a thread so the event loop keeps serving status polls
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, preprocess, raw, profile)

    async def _compress_all(self, raws: Sequence[bytes], profile: CompressionProfile) -> List[EncodedImage]:
        return list(await asyncio.gather(*(self._compress(raw, profile) for raw in raws)))

    async def _load(self, ref: str) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._blobs.get, ref)

    async def _put(self, data: bytes, mime_type: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._blobs.put, data, mime_type)

    async def _store_generated(self, data: bytes) -> str:
        """Re-encode a generated image as JPEG and store it. Raises CompressionError."""
        loop = asyncio.get_running_loop()
        jpeg = await loop.run_in_executor(None, to_jpeg, data)
        return await self._put(jpeg.data, jpeg.mime_type)

    async def _run_pipeline(self, job: GenerationJob) -> JobOutcome:
        api_key = self._api_key()
        if not api_key:
            raise PreconditionFailed("missing_credential")
        if job.kind == JobKind.AVATAR_BATCH:
            if job.is_retry:
                return await self._run_pose_retry(job, api_key)
            return await self._run_avatar_batch(job, api_key)
        return await self._run_tryon(job, api_key)

    async def _run_tryon(self, job: GenerationJob, api_key: str) -> JobOutcome:
        job.progress_message = "Preparing images"
        refs = job.inputs.subject_refs + job.inputs.garment_refs
        raws = [await self._load(ref) for ref in refs]
        encoded = await self._compress_all(raws, FAST_TRANSPORT)

        garment_count = len(job.inputs.garment_refs)
        if job.kind == JobKind.SINGLE_ITEM_TRYON:
            prompt = prompts.single_item_tryon_prompt()
        else:
            prompt = prompts.multi_item_tryon_prompt(garment_count, job.inputs.size_preference)

        job.progress_message = "Generating try-on"
        generated = await self._client.generate(api_key, prompt, encoded)
        image_ref = await self._put(generated.data, generated.mime_type)

        avatar_pose = ""
        for avatar in self._store.avatars():
            if avatar.image_ref == job.inputs.subject_refs[0]:
                avatar_pose = avatar.pose_id
                break
        record = OutfitRecord(
            generated_image_ref=image_ref,
            source_garment_refs=list(job.inputs.garment_refs),
            used_avatar_ref=job.inputs.subject_refs[0],
            used_avatar_pose=avatar_pose,
            is_multi_item=garment_count > 1,
            size_preference=job.inputs.size_preference,
        )

        def apply(txn: StoreTransaction) -> None:
            outfits = txn.get(keys.GENERATED_OUTFITS, [])
            outfits.append(record.model_dump(mode="json"))
            txn.set(keys.GENERATED_OUTFITS, outfits)

        detail = f"Virtual try-on ready using {avatar_pose} avatar. Click to view!" if avatar_pose else ""
        return JobOutcome(
            apply=apply,
            notification=success_notification(job, detail),
            result={"generated_image_ref": image_ref},
        )

    async def _source_photos(self, job: GenerationJob) -> List:
        """Compressed source photos: new uploads, or the persisted ones for a retry."""
        uploads = self._uploads.get(job.id)
        if uploads:
            job.progress_message = "Compressing photos"
            encoded = await self._compress_all(uploads, HIGH_FIDELITY)
            job.inputs.subject_refs = [await self._put(e.data, e.mime_type) for e in encoded]
            return encoded
        return [StoredImage(await self._load(ref), self._blobs.mime_type(ref)) for ref in job.inputs.subject_refs]

    async def _run_avatar_batch(self, job: GenerationJob, api_key: str) -> JobOutcome:
        photos = await self._source_photos(job)
        job.progress_message = "Generating avatars"
        images = await self._client.generate_all(api_key, prompts.avatar_batch_prompt(), photos)

        requested = len(prompts.POSES)
        by_pose: Dict[int, str] = {}
        last_error: Optional[CompressionError] = None
        for image, slot in zip(images, prompts.assign_poses([i.caption for i in images])):
            if slot is None:
                continue
            try:
                by_pose[slot] = await self._store_generated(image.data)
            except CompressionError as exc:
                # that pose is recorded as failed
                logger.warning("Job %s: image for pose %s unusable: %s", job.id, prompts.POSES[slot][0], exc)
                last_error = exc
        if not by_pose:
            raise last_error or NoImageInResponse("No usable avatar image in response")

        records: List[AvatarRecord] = []
        for index, (pose_id, label) in enumerate(prompts.POSES):
            if index in by_pose:
                records.append(AvatarRecord(pose_id=pose_id, pose_label=label, image_ref=by_pose[index],
                                            state=AvatarState.SUCCEEDED))
            else:
                records.append(AvatarRecord(pose_id=pose_id, pose_label=label, state=AvatarState.FAILED))

        succeeded = [i for i, r in enumerate(records) if r.state == AvatarState.SUCCEEDED]
        failed = [i for i, r in enumerate(records) if r.state == AvatarState.FAILED]
        partial = bool(failed)
        source_refs = list(job.inputs.subject_refs)

        def apply(txn: StoreTransaction) -> None:
            txn.set(keys.AVATARS, [r.model_dump(mode="json") for r in records])
            txn.set(keys.SELECTED_AVATAR_INDEX, succeeded[0])
            txn.set(keys.PARTIAL_AVATAR_GENERATION, partial)
            txn.set(keys.AVATAR_SOURCE_PHOTOS, source_refs)

        if partial:
            logger.info("Job %s partial: %d/%d poses", job.id, len(succeeded), requested)
            notification = partial_notification(job, len(succeeded), requested)
        else:
            notification = success_notification(job)
        return JobOutcome(
            apply=apply,
            notification=notification,
            result={
                "partial_success": partial,
                "succeeded_poses": succeeded,
                "failed_poses": failed,
            },
        )

    async def _run_pose_retry(self, job: GenerationJob, api_key: str) -> JobOutcome:
        photos = await self._source_photos(job)
        current = self._store.avatars()

        merged: Dict[str, str] = {}
        last_error: Optional[GenerationError] = None
        pose_ids = [p[0] for p in prompts.POSES]
        for index in job.inputs.retry_poses:
            if index >= len(current) or current[index].pose_id not in pose_ids:
                continue
            pose_id = current[index].pose_id
            job.progress_message = f"Retrying pose {pose_id}"
            try:
                generated = await self._client.generate(api_key, prompts.single_pose_prompt(pose_ids.index(pose_id)), photos)
                merged[pose_id] = await self._store_generated(generated.data)
            except GenerationError as exc:
                logger.warning("Retry of pose %s failed: %s", pose_id, exc.kind.value)
                last_error = exc

        if not merged:
            raise last_error or GenerationError("No poses could be retried")

        new_source_refs = list(job.inputs.subject_refs) if self._uploads.get(job.id) else None
        recovered = [i for i, a in enumerate(current) if a.pose_id in merged]
        still_failed = [
            i for i, a in enumerate(current)
            if a.state == AvatarState.FAILED and a.pose_id not in merged
        ]

        def apply(txn: StoreTransaction) -> None:
            avatars = [AvatarRecord.model_validate(a) for a in txn.get(keys.AVATARS, [])]
            for avatar in avatars:
                if avatar.pose_id in merged and avatar.state == AvatarState.FAILED:
                    avatar.image_ref = merged[avatar.pose_id]
                    avatar.state = AvatarState.SUCCEEDED
                    avatar.created_at = utcnow()
            txn.set(keys.AVATARS, [a.model_dump(mode="json") for a in avatars])
            txn.set(
                keys.PARTIAL_AVATAR_GENERATION,
                any(a.state == AvatarState.FAILED for a in avatars),
            )
            if new_source_refs:
                txn.set(keys.AVATAR_SOURCE_PHOTOS, new_source_refs)

        requested = len(job.inputs.retry_poses)
        if len(merged) < requested:
            notification = partial_notification(job, len(merged), requested)
        else:
            notification = success_notification(job, "Failed avatar poses were regenerated.")
        return JobOutcome(
            apply=apply,
            notification=notification,
            result={
                "retried_poses": list(job.inputs.retry_poses),
                "recovered_poses": recovered,
                "still_failed_poses": still_failed,
            },
        )
