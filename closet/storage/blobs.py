"""Content-addressed image storage with cleanup of unreferenced files."""

import hashlib
import os
import time
from typing import Iterable, Optional

from closet.config import settings

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class ImageBlobStore:
    """Stores image bytes on disk under their sha256; the hash is the image ref.

    Writing the same bytes twice yields the same ref and a single file.
    """

    def __init__(self, base_dir: Optional[str] = None):
        self._base_dir = base_dir or settings.images_dir
        os.makedirs(self._base_dir, exist_ok=True)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def put(self, data: bytes, mime_type: str = "image/jpeg") -> str:
        ref = hashlib.sha256(data).hexdigest()
        path = os.path.join(self._base_dir, ref + _EXTENSIONS.get(mime_type, ".bin"))
        if not os.path.exists(path):
            tmp = path + ".tmp"
            with open(tmp, "wb") as dst:
                dst.write(data)
            os.replace(tmp, path)
        return ref

    def path_for(self, ref: str) -> Optional[str]:
        """Full path of a stored ref, or None."""
        if not ref or os.sep in ref or "." in ref:
            return None
        for ext in set(_EXTENSIONS.values()) | {".bin"}:
            path = os.path.join(self._base_dir, ref + ext)
            if os.path.exists(path):
                return path
        return None

    def exists(self, ref: str) -> bool:
        return self.path_for(ref) is not None

    def get(self, ref: str) -> bytes:
        path = self.path_for(ref)
        if path is None:
            raise KeyError(ref)
        with open(path, "rb") as src:
            return src.read()

    def mime_type(self, ref: str) -> str:
        path = self.path_for(ref) or ""
        for mime, ext in _EXTENSIONS.items():
            if path.endswith(ext):
                return mime
        return "application/octet-stream"

    def delete(self, ref: str) -> bool:
        path = self.path_for(ref)
        if path is None:
            return False
        os.remove(path)
        return True

    def cleanup_orphans(self, referenced: Iterable[str], ttl_hours: int = 2) -> int:
        """Remove files older than TTL that no record references. Returns count removed."""
        keep = set(referenced)
        ttl_seconds = ttl_hours * 3600
        now = time.time()
        removed = 0
        for entry in os.listdir(self._base_dir):
            path = os.path.join(self._base_dir, entry)
            if os.path.isdir(path) or entry.endswith(".tmp"):
                continue
            ref = entry.split(".", 1)[0]
            if ref in keep:
                continue
            if now - os.path.getmtime(path) > ttl_seconds:
                os.remove(path)
                removed += 1
        return removed
