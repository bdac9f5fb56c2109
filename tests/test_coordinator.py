import asyncio
import threading

import pytest

from closet.errors import ErrorKind, JobAlreadyRunning, PreconditionFailed
from closet.jobs.coordinator import JobCoordinator
from closet.jobs.models import AvatarState, GenerationJob, JobKind, JobStatus, SizePreference
from closet.notifications import NOTIFICATION, STATUS_CHANGED, NotificationHub, pending_messages
from closet.storage import status_store as keys
from tests.conftest import (
    error_response,
    hang,
    image_response,
    make_image,
    seed_avatars,
    wait_until_idle,
)

S, F = AvatarState.SUCCEEDED, AvatarState.FAILED
PHOTOS = [make_image(color=(i * 40, 90, 160)) for i in range(3)]


def _garment(blobs, color=(20, 200, 20)):
    return blobs.put(make_image(color=color, fmt="JPEG"), "image/jpeg")


async def test_tryon_appends_outfit(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S, S, S, S], selected=1)
    garment = _garment(blobs)
    service.enqueue(image_response([make_image(color=(5, 5, 5))]))

    job = await coordinator.request_tryon([garment])
    assert job.kind == JobKind.SINGLE_ITEM_TRYON
    await wait_until_idle(store)

    outfits = store.outfits()
    assert len(outfits) == 1
    assert outfits[0].source_garment_refs == [garment]
    assert outfits[0].used_avatar_ref == store.avatars()[1].image_ref
    assert outfits[0].used_avatar_pose == "front-open"
    assert blobs.exists(outfits[0].generated_image_ref)
    assert store.current_job().status == JobStatus.SUCCEEDED
    assert store.last_notification().action == "outfits"

    parts = service.bodies()[0]["contents"][0]["parts"]
    assert len(parts) == 3


async def test_multi_item_uses_size_preference(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S])
    refs = [_garment(blobs, (10, 10, 10)), _garment(blobs, (250, 250, 250))]
    service.enqueue(image_response([make_image()]))

    job = await coordinator.request_tryon(refs, SizePreference.RETAIN)
    await wait_until_idle(store)

    assert job.kind == JobKind.MULTI_ITEM_TRYON
    prompt = service.bodies()[0]["contents"][0]["parts"][0]["text"]
    assert "Maintain the original proportions" in prompt
    assert store.outfits()[0].is_multi_item


@pytest.mark.parametrize("kind", list(JobKind))
async def test_second_start_rejected_while_running(coordinator, store, blobs, service, kind):
    seed_avatars(store, blobs, [S, F, S, F])
    store.set(keys.AVATAR_SOURCE_PHOTOS, [blobs.put(p, "image/png") for p in PHOTOS])
    garment = _garment(blobs)
    service.enqueue(hang)
    await coordinator.request_tryon([garment])

    with pytest.raises(JobAlreadyRunning):
        if kind == JobKind.AVATAR_BATCH:
            await coordinator.request_avatar_batch(PHOTOS)
        elif kind == JobKind.SINGLE_ITEM_TRYON:
            await coordinator.request_tryon([garment])
        else:
            await coordinator.request_tryon([garment, _garment(blobs, (9, 9, 9))])
    with pytest.raises(JobAlreadyRunning):
        await coordinator.request_avatar_retry()
    assert store.status().in_progress


async def test_hanging_pipeline_times_out(store, blobs, client, service):
    store.set_api_key("key-for-timeout-test")
    seed_avatars(store, blobs, [S])
    garment = _garment(blobs)
    service.enqueue(hang)
    coordinator = JobCoordinator(store, blobs, client, NotificationHub(), tryon_timeout=0.3)
    await coordinator.start()
    try:
        job = await coordinator.request_tryon([garment])
        await wait_until_idle(store, timeout=2.0)
    finally:
        await coordinator.stop()

    current = store.current_job()
    assert current.id == job.id
    assert current.status == JobStatus.FAILED
    assert current.error_kind == ErrorKind.TIMEOUT
    assert store.outfits() == []
    assert store.last_notification().title == "Generation Timeout"


async def test_partial_batch(coordinator, store, service):
    service.enqueue(image_response(
        [make_image(color=(1, 1, 1)), make_image(color=(3, 3, 3))],
        captions=["1) Neutral front-facing standing", "3) Three-quarter angle"],
    ))

    job = await coordinator.request_avatar_batch(PHOTOS)
    await wait_until_idle(store)

    avatars = store.avatars()
    assert [a.state for a in avatars] == [S, F, S, F]
    assert store.partial_avatar_generation()
    assert store.selected_avatar_index() == 0
    current = store.current_job()
    assert current.id == job.id
    assert current.status == JobStatus.SUCCEEDED
    assert current.result == {"partial_success": True, "succeeded_poses": [0, 2], "failed_poses": [1, 3]}
    assert len(store.avatar_source_photos()) == 3
    assert store.last_notification().title == "Some Avatars Failed"


async def test_undecodable_pose_image_is_a_failed_pose(coordinator, store, service):
    service.enqueue(image_response(
        [make_image(color=(1, 1, 1)), b"not an image", make_image(color=(3, 3, 3))],
        captions=["1) Neutral front-facing standing", "2) Front-facing open stance", "3) Three-quarter angle"],
    ))

    job = await coordinator.request_avatar_batch(PHOTOS)
    await wait_until_idle(store)

    current = store.current_job()
    assert current.id == job.id
    assert current.status == JobStatus.SUCCEEDED
    assert [a.state for a in store.avatars()] == [S, F, S, F]
    assert current.result["failed_poses"] == [1, 3]


async def test_batch_with_only_undecodable_images_fails(coordinator, store, service):
    service.enqueue(image_response([b"not an image"]))
    await coordinator.request_avatar_batch(PHOTOS)
    await wait_until_idle(store)

    assert store.current_job().status == JobStatus.FAILED
    assert store.current_job().error_kind == ErrorKind.COMPRESSION
    assert store.avatars() == []


async def test_generated_images_are_encoded_off_the_event_loop(coordinator, store, service, monkeypatch):
    from closet.jobs import coordinator as coordinator_module

    threads = []
    real_to_jpeg = coordinator_module.to_jpeg

    def recording_to_jpeg(raw, *args):
        threads.append(threading.get_ident())
        return real_to_jpeg(raw, *args)

    monkeypatch.setattr(coordinator_module, "to_jpeg", recording_to_jpeg)
    service.enqueue(image_response([make_image(color=(1, 1, 1))]))
    await coordinator.request_avatar_batch(PHOTOS)
    await wait_until_idle(store)

    assert threads
    assert threading.get_ident() not in threads


async def test_batch_with_no_images_fails(coordinator, store, service):
    service.enqueue(image_response([]))
    await coordinator.request_avatar_batch(PHOTOS)
    await wait_until_idle(store)

    assert store.current_job().status == JobStatus.FAILED
    assert store.current_job().error_kind == ErrorKind.NO_IMAGE_IN_RESPONSE
    assert store.avatars() == []


async def test_retry_merges_only_failed_pose(coordinator, store, blobs, service):
    before = seed_avatars(store, blobs, [S, F, S, S])
    store.set(keys.PARTIAL_AVATAR_GENERATION, True)
    store.set(keys.AVATAR_SOURCE_PHOTOS, [blobs.put(p, "image/png") for p in PHOTOS])
    service.enqueue(image_response([make_image(color=(77, 77, 77))]))

    await coordinator.request_avatar_retry()
    await wait_until_idle(store)

    after = store.avatars()
    assert after[1].state == S
    assert after[1].image_ref is not None
    for i in (0, 2, 3):
        assert after[i].image_ref == before[i].image_ref
    assert not store.partial_avatar_generation()
    prompt = service.bodies()[0]["contents"][0]["parts"][0]["text"]
    assert "Pose: Front-facing open stance" in prompt
    assert len(service.bodies()[0]["contents"][0]["parts"]) == 1 + len(PHOTOS)


async def test_retry_keeps_flag_while_a_pose_still_fails(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S, F, S, F])
    store.set(keys.PARTIAL_AVATAR_GENERATION, True)
    store.set(keys.AVATAR_SOURCE_PHOTOS, [blobs.put(p, "image/png") for p in PHOTOS])
    service.enqueue(image_response([make_image()]), error_response(500))

    await coordinator.request_avatar_retry()
    await wait_until_idle(store)

    assert [a.state for a in store.avatars()] == [S, S, S, F]
    assert store.partial_avatar_generation()
    assert store.current_job().result == {
        "retried_poses": [1, 3],
        "recovered_poses": [1],
        "still_failed_poses": [3],
    }


async def test_retry_with_fresh_photos_replaces_sources(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S, F])
    service.enqueue(image_response([make_image()]))
    fresh = [make_image(color=(200, i * 30, 0)) for i in range(3)]

    await coordinator.request_avatar_retry(photos=fresh)
    await wait_until_idle(store)

    assert store.avatars()[1].state == S
    assert len(store.avatar_source_photos()) == 3


async def test_auth_failure_routes_to_settings(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S])
    service.enqueue(error_response(401, "API key expired"))
    hub_queue = coordinator.hub.subscribe()

    await coordinator.request_tryon([_garment(blobs)])
    await wait_until_idle(store)

    assert store.current_job().error_kind == ErrorKind.AUTH
    note = store.last_notification()
    assert note.action == "settings"
    assert note.title == "API Key Error"

    messages = pending_messages(hub_queue)
    actions = [m["action"] for m in messages]
    assert actions[0] == STATUS_CHANGED and messages[0]["inProgress"]
    assert STATUS_CHANGED in actions[1:]
    assert actions[-1] == NOTIFICATION


@pytest.mark.parametrize("reason", ["missing_credential", "missing_avatar", "invalid_avatar", "empty_outfit"])
async def test_tryon_preconditions(coordinator, store, blobs, reason):
    if reason == "missing_credential":
        store.delete(keys.API_KEY)
        seed_avatars(store, blobs, [S])
    elif reason == "invalid_avatar":
        seed_avatars(store, blobs, [F, F])
    elif reason == "empty_outfit":
        seed_avatars(store, blobs, [S])
    refs = [] if reason == "empty_outfit" else [_garment(blobs)]

    with pytest.raises(PreconditionFailed) as exc_info:
        await coordinator.request_tryon(refs)
    assert exc_info.value.reason == reason
    assert not store.status().in_progress
    assert store.last_notification().level.value == "warning"


async def test_failed_selection_falls_back_to_usable_avatar(coordinator, store, blobs, service):
    avatars = seed_avatars(store, blobs, [F, S], selected=0)
    service.enqueue(image_response([make_image()]))
    await coordinator.request_tryon([_garment(blobs)])
    await wait_until_idle(store)
    assert store.outfits()[0].used_avatar_ref == avatars[1].image_ref


async def test_avatar_preconditions(coordinator, store, blobs):
    with pytest.raises(PreconditionFailed) as exc_info:
        await coordinator.request_avatar_batch(PHOTOS[:2])
    assert exc_info.value.reason == "not_enough_photos"
    assert "3" in exc_info.value.title_and_message()[1]

    seed_avatars(store, blobs, [S, S])
    with pytest.raises(PreconditionFailed) as exc_info:
        await coordinator.request_avatar_retry()
    assert exc_info.value.reason == "no_failed_poses"

    seed_avatars(store, blobs, [S, F])
    with pytest.raises(PreconditionFailed) as exc_info:
        await coordinator.request_avatar_retry()
    assert exc_info.value.reason == "missing_source_photos"


async def test_restart_fails_interrupted_job(store, blobs, client):
    job = GenerationJob(kind=JobKind.AVATAR_BATCH, status=JobStatus.RUNNING)
    store.try_begin_generation(job)

    coordinator = JobCoordinator(store, blobs, client)
    await coordinator.start()
    await coordinator.stop()

    status = store.status()
    assert not status.in_progress
    assert status.job.status == JobStatus.FAILED
    assert await coordinator.get_status(job.id) is not None


async def test_stop_during_job_clears_flag(coordinator, store, blobs, service):
    seed_avatars(store, blobs, [S])
    service.enqueue(hang)
    await coordinator.request_tryon([_garment(blobs)])
    await asyncio.sleep(0.1)
    await coordinator.stop()

    assert not store.status().in_progress
    assert store.current_job().status == JobStatus.FAILED
