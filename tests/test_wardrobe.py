import httpx
import pytest

from closet import avatars
from closet.errors import CompressionError, JobAlreadyRunning, NetworkError
from closet.jobs.models import AvatarState, GenerationJob, JobKind, JobStatus, SourceMetadata
from closet.wardrobe import Wardrobe
from tests.conftest import make_image, seed_avatars

S, F = AvatarState.SUCCEEDED, AvatarState.FAILED


@pytest.fixture
def wardrobe(store, blobs, client):
    return Wardrobe(store, blobs, client)


async def test_same_image_added_twice_is_one_item(wardrobe, store):
    raw = make_image((400, 600), color=(30, 60, 90))
    first = await wardrobe.add_upload(raw)
    second = await wardrobe.add_upload(raw)

    assert first.added
    assert not second.added
    assert second.item.image_ref == first.item.image_ref
    assert len(store.clothing_items()) == 1


async def test_external_image_fetched_and_tagged(wardrobe, store, blobs, service):
    service.enqueue(httpx.Response(200, content=make_image(color=(9, 99, 199))))
    result = await wardrobe.add_external_image(
        "https://shop.test/shirt.png",
        SourceMetadata(url="https://shop.test/shirt", title="Blue shirt"),
    )

    assert result.added
    assert blobs.exists(result.item.image_ref)
    meta = store.clothing_items()[0].source_metadata
    assert meta.title == "Blue shirt"
    assert meta.image_url == "https://shop.test/shirt.png"
    assert service.requests[0].method == "GET"


async def test_external_fetch_failure(wardrobe, store, service):
    service.enqueue(httpx.Response(404))
    with pytest.raises(NetworkError):
        await wardrobe.add_external_image("https://shop.test/missing.png")
    assert store.clothing_items() == []


async def test_non_image_upload_rejected(wardrobe, store):
    with pytest.raises(CompressionError):
        await wardrobe.add_upload(b"<html></html>")
    assert store.clothing_items() == []


async def test_remove(wardrobe, store):
    result = await wardrobe.add_upload(make_image())
    assert wardrobe.remove(result.item.image_ref)
    assert not wardrobe.remove(result.item.image_ref)
    assert wardrobe.items() == []


def test_select_rejects_failed_avatar(store, blobs):
    seed_avatars(store, blobs, [S, F, S, F])
    assert [i for i, _ in avatars.selectable(store)] == [0, 2]

    with pytest.raises(avatars.AvatarEditError):
        avatars.select_avatar(store, 1)
    with pytest.raises(avatars.AvatarEditError):
        avatars.select_avatar(store, 9)
    avatars.select_avatar(store, 2)
    assert store.selected_avatar_index() == 2


def test_delete_keeps_selection_on_same_avatar(store, blobs):
    seeded = seed_avatars(store, blobs, [S, S, S], selected=2)
    remaining = avatars.delete_avatar(store, 0)

    assert len(remaining) == 2
    assert store.selected_avatar().image_ref == seeded[2].image_ref


def test_delete_last_failed_pose_clears_partial_flag(store, blobs):
    seed_avatars(store, blobs, [S, F])
    store.set("partialAvatarGeneration", True)
    avatars.delete_avatar(store, 1)
    assert not store.partial_avatar_generation()


def test_cannot_delete_last_avatar(store, blobs):
    seed_avatars(store, blobs, [S])
    with pytest.raises(avatars.AvatarEditError):
        avatars.delete_avatar(store, 0)


def test_avatar_edits_blocked_while_generating(store, blobs):
    seed_avatars(store, blobs, [S, S])
    store.try_begin_generation(GenerationJob(kind=JobKind.AVATAR_BATCH, status=JobStatus.RUNNING))
    with pytest.raises(JobAlreadyRunning):
        avatars.select_avatar(store, 1)
    with pytest.raises(JobAlreadyRunning):
        avatars.delete_avatar(store, 1)
