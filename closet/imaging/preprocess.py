"""Image preprocessing: bound dimensions, flatten onto white, re-encode as JPEG under a byte budget.

Two calibration profiles are used by callers:

    HIGH_FIDELITY   avatar source photos and archived wardrobe images
    FAST_TRANSPORT  images re-encoded for a single generation request

Usage:
    encoded = preprocess(raw_bytes, FAST_TRANSPORT)
    encoded.base64  # ready for an inlineData part
"""

import base64
import hashlib
import io
from dataclasses import dataclass, field
from typing import List, Tuple

from PIL import Image, UnidentifiedImageError

from closet.config import settings
from closet.errors import CompressionError


@dataclass(frozen=True)
class CompressionProfile:
    max_dimension: int
    target_max_bytes: int
    quality: int
    min_quality: int
    quality_step: int = 10


HIGH_FIDELITY = CompressionProfile(
    max_dimension=settings.hifi_max_dimension,
    target_max_bytes=settings.hifi_target_max_bytes,
    quality=settings.hifi_quality,
    min_quality=settings.hifi_min_quality,
    quality_step=settings.quality_step,
)

FAST_TRANSPORT = CompressionProfile(
    max_dimension=settings.fast_max_dimension,
    target_max_bytes=settings.fast_target_max_bytes,
    quality=settings.fast_quality,
    min_quality=settings.fast_min_quality,
    quality_step=settings.quality_step,
)


@dataclass
class EncodedImage:
    data: bytes
    width: int
    height: int
    quality: int
    mime_type: str = "image/jpeg"
    # size of the returned candidate after each encode attempt
    attempt_sizes: List[int] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


def scaled_dimensions(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Fit (width, height) inside a max_dimension square, keeping aspect ratio."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = max_dimension / max(width, height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _flatten(img: Image.Image) -> Image.Image:
    """Composite onto an opaque white background."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, (255, 255, 255))
        canvas.paste(rgba, mask=rgba.split()[-1])
        return canvas
    return img.convert("RGB")


def _encode(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    try:
        img.save(buf, format="JPEG", quality=quality, optimize=True)
    except (OSError, ValueError) as exc:
        raise CompressionError(
            f"JPEG encode failed at quality {quality}: {exc}",
            user_message="Image compression failed. Try different photos.",
        ) from exc
    data = buf.getvalue()
    if not data:
        raise CompressionError(
            "JPEG encoder produced no output",
            user_message="Image compression failed. Try different photos.",
        )
    return data


def decode(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise CompressionError(
            f"Could not decode image: {exc}",
            user_message="Unsupported file detected. Please upload JPEG/PNG photos.",
        ) from exc
    return img


def preprocess(raw: bytes, profile: CompressionProfile = FAST_TRANSPORT) -> EncodedImage:
    """Decode, bound, flatten and re-encode an image.

    Quality is lowered by ``profile.quality_step`` until the encoding fits
    ``profile.target_max_bytes`` or ``profile.min_quality`` is reached. An
    oversized result is still returned. Only a failing encoder raises.
    """
    img = _flatten(decode(raw))
    width, height = scaled_dimensions(img.width, img.height, profile.max_dimension)
    if (width, height) != img.size:
        img = img.resize((width, height), Image.LANCZOS)

    quality = profile.quality
    best = _encode(img, quality)
    best_quality = quality
    sizes = [len(best)]

    while len(best) > profile.target_max_bytes and quality > profile.min_quality:
        quality = max(profile.min_quality, quality - profile.quality_step)
        candidate = _encode(img, quality)
        # JPEG size is not strictly monotonic in quality; never hand back a larger payload
        if len(candidate) <= len(best):
            best, best_quality = candidate, quality
        sizes.append(len(best))

    return EncodedImage(
        data=best,
        width=width,
        height=height,
        quality=best_quality,
        attempt_sizes=sizes,
    )


def to_jpeg(raw: bytes, quality: int = 90) -> EncodedImage:
    """Re-encode a generated image as an opaque JPEG without resizing."""
    img = _flatten(decode(raw))
    data = _encode(img, quality)
    return EncodedImage(data=data, width=img.width, height=img.height, quality=quality,
                        attempt_sizes=[len(data)])


@dataclass
class StoredImage:
    """Already-encoded bytes loaded back from the blob store."""
    data: bytes
    mime_type: str = "image/jpeg"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")
