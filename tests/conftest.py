import asyncio
import base64
import io
import json
from typing import List, Optional

import httpx
import pytest
from PIL import Image

from closet.generation.client import GenerationClient
from closet.jobs.coordinator import JobCoordinator
from closet.jobs.models import AvatarRecord, AvatarState
from closet.notifications import NotificationHub
from closet.storage.blobs import ImageBlobStore
from closet.storage.status_store import StatusStore

API_KEY = "AIzaTestKey-0123456789abcd"


def make_image(size=(64, 96), color=(180, 40, 40), fmt="PNG", mode="RGB") -> bytes:
    if mode == "RGBA":
        img = Image.new("RGBA", size, color + (255,) if len(color) == 3 else color)
    else:
        img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def noise_image(size=(800, 800), fmt="PNG") -> bytes:
    """High-entropy image whose JPEG encoding stays large at any quality."""
    img = Image.effect_noise(size, 100).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def image_response(images: List[bytes], captions: Optional[List[str]] = None) -> httpx.Response:
    parts = []
    for i, data in enumerate(images):
        if captions and captions[i]:
            parts.append({"text": captions[i]})
        parts.append({"inlineData": {"mimeType": "image/png", "data": base64.b64encode(data).decode()}})
    return httpx.Response(200, json={"candidates": [{"content": {"parts": parts}}]})


def text_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def error_response(code: int, message: str = "error") -> httpx.Response:
    return httpx.Response(code, json={"error": {"code": code, "message": message}})


async def hang(request: httpx.Request) -> httpx.Response:
    await asyncio.Event().wait()
    raise AssertionError("unreachable")


class FakeGenerationService:
    """Scripted stand-in for the remote service, mounted as an httpx.MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._responses = []
        self.default = None

    def enqueue(self, *responses) -> None:
        self._responses.extend(responses)

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0) if self._responses else self.default
        if response is None:
            return error_response(500, "no scripted response")
        if callable(response):
            response = await response(request)
        return response


@pytest.fixture
def store(tmp_path):
    return StatusStore(str(tmp_path / "status.db"))


@pytest.fixture
def blobs(tmp_path):
    return ImageBlobStore(str(tmp_path / "images"))


@pytest.fixture
def service():
    return FakeGenerationService()


@pytest.fixture
async def client(service):
    http = httpx.AsyncClient(transport=httpx.MockTransport(service))
    yield GenerationClient(base_url="https://gen.test/v1beta", model="test-model", http_client=http)
    await http.aclose()


@pytest.fixture
async def coordinator(store, blobs, client):
    store.set_api_key(API_KEY)
    coordinator = JobCoordinator(
        store, blobs, client, NotificationHub(),
        tryon_timeout=5.0, avatar_timeout=5.0, min_avatar_photos=3,
    )
    await coordinator.start()
    yield coordinator
    await coordinator.stop()


def seed_avatars(store, blobs, states, selected=0) -> List[AvatarRecord]:
    """Persist one avatar per state, with a stored image for each success."""
    from closet.generation.prompts import POSES

    avatars = []
    for i, state in enumerate(states):
        pose_id, label = POSES[i]
        ref = None
        if state == AvatarState.SUCCEEDED:
            ref = blobs.put(make_image(color=(10 * i, 100, 100), fmt="JPEG"), "image/jpeg")
        avatars.append(AvatarRecord(pose_id=pose_id, pose_label=label, image_ref=ref, state=state))
    store.set_avatars(avatars, selected)
    return avatars


async def wait_until_idle(store, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while store.status().in_progress:
        if loop.time() > deadline:
            raise AssertionError("generation still in progress")
        await asyncio.sleep(0.02)


@pytest.fixture(autouse=True)
def no_environment_key(monkeypatch):
    from closet.config import settings

    monkeypatch.setattr(settings, "api_key", None)
