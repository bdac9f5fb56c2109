"""Remote image-generation client.

Processing flow:
    1. Build one ``generateContent`` request: prompt text first, then every
       image as an ``inlineData`` part (subject first, garments after).
    2. POST it with the caller's credential.
    3. Non-2xx responses are classified into the error taxonomy from the
       structured ``{"error": {"code", "message"}}`` body.
    4. On success, return the image-typed parts of the first candidate.

Retry policy:
    None. Callers decide, since avatar batches and try-ons retry differently.

Timeouts:
    No per-request timeout. The coordinator's job deadline is the outer
    bound and cancels the awaiting task.
"""

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from closet.config import settings
from closet.errors import (
    AuthError,
    GenerationError,
    MalformedRequest,
    NetworkError,
    NoImageInResponse,
    PayloadTooLarge,
    QuotaExceeded,
    UnknownGenerationError,
)

logger = logging.getLogger(__name__)


class ImagePart(Protocol):
    mime_type: str

    @property
    def base64(self) -> str: ...


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str
    # text parts seen since the previous image, e.g. "2) Front-facing open stance"
    caption: str = ""


@dataclass
class CredentialCheck:
    valid: bool
    message: str


def build_request_body(
    prompt: str,
    image_parts: Sequence[ImagePart],
    response_modalities: Sequence[str] = ("TEXT", "IMAGE"),
) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    for image in image_parts:
        parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.base64}})
    return {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": list(response_modalities)},
    }


def classify_error(status_code: int, body_text: str) -> GenerationError:
    """Map a failed response onto the error taxonomy."""
    code: Optional[int] = None
    message = ""
    try:
        error = json.loads(body_text).get("error") or {}
        code = error.get("code")
        message = error.get("message") or ""
    except (ValueError, AttributeError):
        error = None

    if not error:
        # no structured body; fall back on the HTTP status, keep the raw text
        raw = f"API request failed: {status_code} {body_text}".strip()
        if status_code in (401, 403):
            return AuthError(raw, status_code=status_code)
        if status_code == 429:
            return QuotaExceeded(raw, status_code=status_code)
        if status_code == 413:
            return PayloadTooLarge(raw, status_code=status_code)
        return UnknownGenerationError(raw, status_code=status_code)

    code = code or status_code
    if "quotaBytes" in message or code == 413:
        return PayloadTooLarge(message, status_code=code)
    if code == 429:
        return QuotaExceeded(message, status_code=code)
    if code in (401, 403):
        return AuthError(message, status_code=code)
    if code == 400:
        if "API key not valid" in message:
            return MalformedRequest(
                message,
                status_code=code,
                user_message="Invalid API key. Please check your key and try again.",
                credential_invalid=True,
            )
        return MalformedRequest(message, status_code=code)
    return UnknownGenerationError(
        f"API request failed: {status_code} {message or body_text}".strip(),
        status_code=code,
    )


def extract_images(payload: Dict[str, Any]) -> List[GeneratedImage]:
    """Every image-typed inline part of the first candidate, in order."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return []
    parts = (candidates[0].get("content") or {}).get("parts") or []
    images = []
    caption: List[str] = []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if not inline:
            if part.get("text"):
                caption.append(part["text"].strip())
            continue
        mime = inline.get("mimeType") or inline.get("mime_type") or ""
        if not mime.startswith("image/"):
            continue
        images.append(GeneratedImage(
            data=base64.b64decode(inline.get("data") or ""),
            mime_type=mime,
            caption=" ".join(caption),
        ))
        caption = []
    return images


def _response_text(payload: Dict[str, Any]) -> str:
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return " ".join(p["text"] for p in parts if p.get("text"))[:200]


class GenerationClient:
    """Async client for the ``generateContent`` endpoint.

    Usage:
        client = GenerationClient()
        image = await client.generate(api_key, prompt, [avatar, garment])
        await client.aclose()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._model = model or settings.image_model
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None))

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    async def _post(self, api_key: str, body: Dict[str, Any]) -> httpx.Response:
        try:
            return await self._http.post(
                self.endpoint,
                json=body,
                headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"Network error: {exc}") from exc

    async def _generate(self, api_key: str, prompt: str, image_parts: Sequence[ImagePart]) -> List[GeneratedImage]:
        body = build_request_body(prompt, image_parts)
        logger.info("Sending generation request with %d image part(s)", len(image_parts))
        response = await self._post(api_key, body)
        if not response.is_success:
            error = classify_error(response.status_code, response.text)
            logger.warning("Generation request failed: %s (%s)", error.kind.value, error.status_code)
            raise error
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownGenerationError(f"Unreadable response body: {exc}") from exc
        images = extract_images(payload)
        if not images:
            text = _response_text(payload)
            raise NoImageInResponse(
                f"No image generated in response{': ' + text if text else ''}"
            )
        return images

    async def generate(self, api_key: str, prompt: str, image_parts: Sequence[ImagePart]) -> GeneratedImage:
        """First generated image of the response."""
        images = await self._generate(api_key, prompt, image_parts)
        return images[0]

    async def generate_all(self, api_key: str, prompt: str, image_parts: Sequence[ImagePart]) -> List[GeneratedImage]:
        """Every generated image of the response, in order (avatar batches)."""
        return await self._generate(api_key, prompt, image_parts)

    async def validate_credential(self, api_key: Optional[str]) -> CredentialCheck:
        """Lightweight text-only call; ``ok`` means the key works."""
        if not api_key or not api_key.strip():
            return CredentialCheck(False, "Please enter an API key")
        body = {"contents": [{"role": "user", "parts": [{"text": "Hello"}]}]}
        try:
            response = await self._post(api_key.strip(), body)
        except NetworkError:
            return CredentialCheck(
                False, "Network error while validating API key. Please check your connection."
            )
        if response.is_success:
            return CredentialCheck(True, "API key is valid and working")

        error = classify_error(response.status_code, response.text)
        if isinstance(error, MalformedRequest) and error.credential_invalid:
            message = "Invalid API key. Please check your key and try again."
        elif isinstance(error, QuotaExceeded):
            message = "API quota exceeded. Please check your billing or try again later."
        elif isinstance(error, AuthError) and error.status_code == 403:
            message = "API key does not have permission to access this service."
        elif isinstance(error, AuthError):
            message = "Invalid or expired API key. Please update your API key."
        else:
            message = f"API key validation failed: {response.status_code}"
        return CredentialCheck(False, message)

    async def fetch_image(self, url: str) -> bytes:
        """Download an external image (wardrobe additions)."""
        try:
            response = await self._http.get(
                url,
                follow_redirects=True,
                timeout=settings.fetch_timeout_seconds,
                headers={"Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"},
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"Failed to fetch image: {exc}") from exc
        if not response.is_success:
            raise NetworkError(f"Failed to fetch image: {response.status_code}", status_code=response.status_code)
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
