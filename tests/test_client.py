import httpx
import pytest

from closet.errors import (
    AuthError,
    ErrorKind,
    MalformedRequest,
    NetworkError,
    NoImageInResponse,
    PayloadTooLarge,
    QuotaExceeded,
    UnknownGenerationError,
)
from closet.generation.client import classify_error, extract_images
from closet.generation.prompts import assign_poses, match_pose
from closet.imaging.preprocess import FAST_TRANSPORT, preprocess
from tests.conftest import (
    API_KEY,
    error_response,
    image_response,
    make_image,
    text_response,
)


@pytest.mark.parametrize("code, expected", [
    (429, QuotaExceeded),
    (401, AuthError),
    (403, AuthError),
    (413, PayloadTooLarge),
    (400, MalformedRequest),
    (500, UnknownGenerationError),
])
async def test_error_responses_map_to_taxonomy(client, service, code, expected):
    service.enqueue(error_response(code))
    with pytest.raises(expected) as exc_info:
        await client.generate(API_KEY, "prompt", [])
    assert exc_info.value.status_code == code


async def test_response_without_image_part(client, service):
    service.enqueue(text_response("I cannot generate that image."))
    with pytest.raises(NoImageInResponse) as exc_info:
        await client.generate(API_KEY, "prompt", [])
    assert "I cannot generate that image." in str(exc_info.value)
    assert exc_info.value.kind == ErrorKind.NO_IMAGE_IN_RESPONSE


def test_quota_bytes_message_is_payload_too_large():
    err = classify_error(400, '{"error": {"code": 400, "message": "Request exceeds quotaBytes"}}')
    assert isinstance(err, PayloadTooLarge)


def test_invalid_key_routes_to_settings():
    err = classify_error(400, '{"error": {"code": 400, "message": "API key not valid. Please pass a valid API key."}}')
    assert isinstance(err, MalformedRequest)
    assert err.credential_invalid
    assert err.routes_to_settings
    assert not classify_error(400, '{"error": {"code": 400, "message": "bad"}}').routes_to_settings


def test_unstructured_body_falls_back_on_status():
    err = classify_error(502, "<html>Bad Gateway</html>")
    assert isinstance(err, UnknownGenerationError)
    assert "Bad Gateway" in str(err)
    assert isinstance(classify_error(429, "slow down"), QuotaExceeded)


async def test_request_carries_prompt_then_images_and_key_header(client, service):
    service.enqueue(image_response([make_image()]))
    avatar = preprocess(make_image(color=(1, 1, 1)), FAST_TRANSPORT)
    garment = preprocess(make_image(color=(200, 200, 200)), FAST_TRANSPORT)

    image = await client.generate(API_KEY, "dress the person", [avatar, garment])

    assert image.mime_type == "image/png"
    request = service.requests[0]
    assert request.headers["x-goog-api-key"] == API_KEY
    assert request.url.path.endswith("/models/test-model:generateContent")
    parts = service.bodies()[0]["contents"][0]["parts"]
    assert parts[0] == {"text": "dress the person"}
    assert parts[1]["inlineData"]["data"] == avatar.base64
    assert parts[2]["inlineData"]["data"] == garment.base64


async def test_transport_failure_is_network_error(client, service):
    async def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    service.enqueue(boom)
    with pytest.raises(NetworkError):
        await client.generate(API_KEY, "prompt", [])


def test_extract_images_skips_non_image_parts_and_keeps_captions():
    payload = {"candidates": [{"content": {"parts": [
        {"text": "1) Neutral front-facing standing"},
        {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}},
        {"inlineData": {"mimeType": "text/plain", "data": "aGVsbG8="}},
        {"inlineData": {"mimeType": "image/jpeg", "data": "d29ybGQ="}},
    ]}}]}
    images = extract_images(payload)
    assert [i.data for i in images] == [b"hello", b"world"]
    assert images[0].caption == "1) Neutral front-facing standing"
    assert images[1].caption == ""


def test_pose_assignment_by_caption_then_order():
    assert match_pose("3) Three-quarter angle") == 2
    assert match_pose("Image 4:") == 3
    assert match_pose("here you go") is None
    assert assign_poses(["1) front", "Three-quarter angle"]) == [0, 2]
    assert assign_poses(["", "", ""]) == [0, 1, 2]
    assert assign_poses(["side profile", ""]) == [3, 0]


@pytest.mark.parametrize("response, message", [
    (text_response("Hi"), "API key is valid and working"),
    (error_response(400, "API key not valid. Please pass a valid API key."),
     "Invalid API key. Please check your key and try again."),
    (error_response(429), "API quota exceeded. Please check your billing or try again later."),
    (error_response(403), "API key does not have permission to access this service."),
])
async def test_validate_credential_messages(client, service, response, message):
    service.enqueue(response)
    check = await client.validate_credential(API_KEY)
    assert check.message == message
    assert check.valid == (response.status_code == 200)


async def test_validate_empty_credential_makes_no_request(client, service):
    check = await client.validate_credential("  ")
    assert not check.valid
    assert check.message == "Please enter an API key"
    assert service.requests == []
