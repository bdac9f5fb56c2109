"""Persistent status store: the one channel between the background service and UI contexts.

A small sqlite key/value table holding JSON values. Every context can
read it; only the background service opens it writable. Read-modify-write
sequences run inside ``BEGIN IMMEDIATE`` so that two concurrent job
starts cannot both see the in-progress flag cleared.

Keys:
    generationInProgress      bool
    generationStartTime       ISO8601 | null
    currentJob                GenerationJob (last started job)
    avatars                   AvatarRecord[]
    selectedAvatarIndex       int
    partialAvatarGeneration   bool
    avatarSourcePhotos        image refs of the compressed source photos
    generatedOutfits          OutfitRecord[]
    clothingItems             ClothingItem[]
    apiKey                    str
    notificationData          Notification (last one emitted)
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from closet.jobs.models import (
    AvatarRecord,
    ClothingItem,
    GenerationJob,
    GenerationStatus,
    JobStatus,
    Notification,
    OutfitRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

GENERATION_IN_PROGRESS = "generationInProgress"
GENERATION_START_TIME = "generationStartTime"
CURRENT_JOB = "currentJob"
AVATARS = "avatars"
SELECTED_AVATAR_INDEX = "selectedAvatarIndex"
PARTIAL_AVATAR_GENERATION = "partialAvatarGeneration"
AVATAR_SOURCE_PHOTOS = "avatarSourcePhotos"
GENERATED_OUTFITS = "generatedOutfits"
CLOTHING_ITEMS = "clothingItems"
API_KEY = "apiKey"
NOTIFICATION_DATA = "notificationData"

_SCHEMA = "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"


class ReadOnlyStoreError(PermissionError):
    """A UI context tried to write job state."""


class StoreTransaction:
    """Reads and writes inside one ``BEGIN IMMEDIATE`` transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row[0]) if row else default

    def set(self, key: str, value: Any) -> None:
        self._conn.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(value)),
        )

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))


def _dump(models: Iterable[Any]) -> List[Dict[str, Any]]:
    return [m.model_dump(mode="json") for m in models]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StatusStore:
    """Durable process-wide key/value store, initialized lazily on first access."""

    def __init__(self, path: str, read_only: bool = False):
        self._path = path
        self._read_only = read_only
        self._initialized = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def read_only(self) -> bool:
        return self._read_only

    def reader(self) -> "StatusStore":
        """A read-only view of the same file, for UI contexts."""
        return StatusStore(self._path, read_only=True)

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if self._read_only:
            if not os.path.exists(self._path):
                raise FileNotFoundError(f"Status store not created yet: {self._path}")
        else:
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
            conn = sqlite3.connect(self._path)
            try:
                conn.execute(_SCHEMA)
                conn.commit()
            finally:
                conn.close()
        self._initialized = True

    def _connect(self) -> sqlite3.Connection:
        self._ensure_initialized()
        if self._read_only:
            return sqlite3.connect(f"file:{self._path}?mode=ro", uri=True, timeout=10.0)
        return sqlite3.connect(self._path, timeout=10.0, isolation_level=None)

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Atomic read-modify-write. Writers only."""
        if self._read_only:
            raise ReadOnlyStoreError("UI contexts may not write the status store")
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTransaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        if self._read_only and not os.path.exists(self._path):
            # background service has not run yet: every key reads as unset
            return {}
        conn = self._connect()
        try:
            placeholders = ",".join("?" for _ in keys)
            rows = conn.execute(
                f"SELECT key, value FROM kv WHERE key IN ({placeholders})", keys
            ).fetchall()
        finally:
            conn.close()
        return {k: json.loads(v) for k, v in rows}

    def get(self, key: str, default: Any = None) -> Any:
        return self.get_many([key]).get(key, default)

    def set_many(self, items: Dict[str, Any]) -> None:
        with self.transaction() as txn:
            for key, value in items.items():
                txn.set(key, value)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def delete(self, *keys: str) -> None:
        with self.transaction() as txn:
            for key in keys:
                txn.delete(key)

    # ------------------------------------------------------------------
    # Generation flag
    # ------------------------------------------------------------------

    def try_begin_generation(self, job: GenerationJob) -> bool:
        """Check-and-set the in-progress flag. False if another job is running."""
        with self.transaction() as txn:
            if txn.get(GENERATION_IN_PROGRESS, False):
                return False
            job.started_at = job.started_at or utcnow()
            txn.set(GENERATION_IN_PROGRESS, True)
            txn.set(GENERATION_START_TIME, job.started_at.isoformat())
            txn.set(CURRENT_JOB, job.model_dump(mode="json"))
        return True

    def finish_generation(
        self,
        job: GenerationJob,
        apply: Optional[Callable[[StoreTransaction], None]] = None,
    ) -> bool:
        """Persist a terminal job and clear the flag, atomically.

        ``apply`` writes the job's results in the same transaction. Nothing
        is written unless this job is still the current running one; that
        is how a result arriving after its job timed out gets discarded.
        """
        with self.transaction() as txn:
            current = txn.get(CURRENT_JOB)
            if current is not None and (
                current.get("id") != job.id or current.get("status") != JobStatus.RUNNING.value
            ):
                logger.warning("Discarding late result of job %s", job.id)
                return False
            if apply is not None:
                apply(txn)
            txn.set(CURRENT_JOB, job.model_dump(mode="json"))
            txn.set(GENERATION_IN_PROGRESS, False)
            txn.set(GENERATION_START_TIME, None)
        return True

    def clear_generation_flag(self) -> None:
        """Force the flag off, e.g. after a crash left it set."""
        self.set_many({GENERATION_IN_PROGRESS: False, GENERATION_START_TIME: None})

    def status(self) -> GenerationStatus:
        data = self.get_many([
            GENERATION_IN_PROGRESS,
            GENERATION_START_TIME,
            CURRENT_JOB,
            PARTIAL_AVATAR_GENERATION,
        ])
        job = data.get(CURRENT_JOB)
        return GenerationStatus(
            in_progress=bool(data.get(GENERATION_IN_PROGRESS, False)),
            start_time=_parse_time(data.get(GENERATION_START_TIME)),
            job=GenerationJob.model_validate(job) if job else None,
            partial_avatar_generation=bool(data.get(PARTIAL_AVATAR_GENERATION, False)),
        )

    def current_job(self) -> Optional[GenerationJob]:
        job = self.get(CURRENT_JOB)
        return GenerationJob.model_validate(job) if job else None

    # ------------------------------------------------------------------
    # Avatars
    # ------------------------------------------------------------------

    def avatars(self) -> List[AvatarRecord]:
        return [AvatarRecord.model_validate(a) for a in self.get(AVATARS, [])]

    def selected_avatar_index(self) -> int:
        """Selected index, clamped into the current avatar range."""
        data = self.get_many([AVATARS, SELECTED_AVATAR_INDEX])
        return clamp_index(data.get(SELECTED_AVATAR_INDEX, 0), len(data.get(AVATARS, [])))

    def selected_avatar(self) -> Optional[AvatarRecord]:
        avatars = self.avatars()
        if not avatars:
            return None
        return avatars[clamp_index(self.get(SELECTED_AVATAR_INDEX, 0), len(avatars))]

    def set_avatars(self, avatars: List[AvatarRecord], selected_index: Optional[int] = None) -> None:
        items: Dict[str, Any] = {AVATARS: _dump(avatars)}
        if selected_index is not None:
            items[SELECTED_AVATAR_INDEX] = selected_index
        self.set_many(items)

    def partial_avatar_generation(self) -> bool:
        return bool(self.get(PARTIAL_AVATAR_GENERATION, False))

    def avatar_source_photos(self) -> List[str]:
        return list(self.get(AVATAR_SOURCE_PHOTOS, []))

    # ------------------------------------------------------------------
    # Outfits and wardrobe
    # ------------------------------------------------------------------

    def outfits(self) -> List[OutfitRecord]:
        return [OutfitRecord.model_validate(o) for o in self.get(GENERATED_OUTFITS, [])]

    def set_outfits(self, outfits: List[OutfitRecord]) -> None:
        self.set(GENERATED_OUTFITS, _dump(outfits))

    def clothing_items(self) -> List[ClothingItem]:
        return [ClothingItem.model_validate(c) for c in self.get(CLOTHING_ITEMS, [])]

    def append_clothing_item(self, item: ClothingItem) -> bool:
        """Append unless an item with the same image ref exists. True if appended."""
        with self.transaction() as txn:
            items = txn.get(CLOTHING_ITEMS, [])
            if any(existing.get("image_ref") == item.image_ref for existing in items):
                return False
            items.append(item.model_dump(mode="json"))
            txn.set(CLOTHING_ITEMS, items)
        return True

    def remove_clothing_item(self, image_ref: str) -> bool:
        with self.transaction() as txn:
            items = txn.get(CLOTHING_ITEMS, [])
            kept = [i for i in items if i.get("image_ref") != image_ref]
            if len(kept) == len(items):
                return False
            txn.set(CLOTHING_ITEMS, kept)
        return True

    # ------------------------------------------------------------------
    # Preferences and notifications
    # ------------------------------------------------------------------

    def api_key(self) -> Optional[str]:
        return self.get(API_KEY) or None

    def set_api_key(self, api_key: str) -> None:
        self.set(API_KEY, api_key)

    def masked_api_key(self) -> Optional[str]:
        return mask_key(self.api_key())

    def last_notification(self) -> Optional[Notification]:
        data = self.get(NOTIFICATION_DATA)
        return Notification.model_validate(data) if data else None

    def set_last_notification(self, notification: Notification) -> None:
        self.set(NOTIFICATION_DATA, notification.model_dump(mode="json"))

    def clear_last_notification(self) -> None:
        self.delete(NOTIFICATION_DATA)

    def referenced_refs(self) -> List[str]:
        """Every image ref some record points at."""
        refs: List[str] = []
        refs.extend(a.image_ref for a in self.avatars() if a.image_ref)
        refs.extend(self.avatar_source_photos())
        refs.extend(c.image_ref for c in self.clothing_items())
        for outfit in self.outfits():
            refs.append(outfit.generated_image_ref)
            refs.append(outfit.used_avatar_ref)
            refs.extend(outfit.source_garment_refs)
        return refs


def clamp_index(index: Any, length: int) -> int:
    if length <= 0:
        return 0
    try:
        index = int(index or 0)
    except (TypeError, ValueError):
        index = 0
    return min(max(index, 0), length - 1)


def mask_key(api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None
    if len(api_key) <= 12:
        return "*" * len(api_key)
    return f"{api_key[:8]}...{api_key[-4:]}"
