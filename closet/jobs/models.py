"""Data model for generation jobs and the records they produce."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid

from closet.errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    AVATAR_BATCH = "avatar-batch"
    SINGLE_ITEM_TRYON = "single-item-tryon"
    MULTI_ITEM_TRYON = "multi-item-tryon"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SizePreference(str, Enum):
    FIT = "fit"
    RETAIN = "retain"


class JobInputs(BaseModel):
    """Image refs a job reads. Subject first, then garments."""
    subject_refs: List[str] = Field(default_factory=list)
    garment_refs: List[str] = Field(default_factory=list)
    size_preference: SizePreference = SizePreference.FIT
    # avatar-batch only: pose indexes to re-run; empty means the full batch
    retry_poses: List[int] = Field(default_factory=list)


class GenerationJob(BaseModel):
    """Tracks the lifecycle of one remote-generation job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    status: JobStatus = JobStatus.IDLE
    inputs: JobInputs = Field(default_factory=JobInputs)
    timeout_budget: float = 300.0
    progress_message: str = ""
    result: Optional[Dict[str, Any]] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_retry(self) -> bool:
        return self.kind == JobKind.AVATAR_BATCH and bool(self.inputs.retry_poses)


class AvatarState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AvatarRecord(BaseModel):
    pose_id: str
    pose_label: str = ""
    image_ref: Optional[str] = None
    state: AvatarState = AvatarState.PENDING
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def usable(self) -> bool:
        return self.state == AvatarState.SUCCEEDED and bool(self.image_ref)


class OutfitRecord(BaseModel):
    generated_image_ref: str
    source_garment_refs: List[str]
    used_avatar_ref: str
    used_avatar_pose: str = ""
    is_multi_item: bool = False
    size_preference: SizePreference = SizePreference.FIT
    created_at: datetime = Field(default_factory=utcnow)


class SourceMetadata(BaseModel):
    url: Optional[str] = None
    title: Optional[str] = None
    favicon: Optional[str] = None
    image_url: Optional[str] = None


class ClothingItem(BaseModel):
    image_ref: str
    added_at: datetime = Field(default_factory=utcnow)
    source_metadata: Optional[SourceMetadata] = None


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    level: NotificationLevel
    title: str
    message: str
    # where a click should take the user: "outfits", "avatars", "wardrobe", "settings"
    action: Optional[str] = None
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class GenerationStatus(BaseModel):
    """Snapshot of the in-progress flag as every context sees it."""
    in_progress: bool = False
    start_time: Optional[datetime] = None
    job: Optional[GenerationJob] = None
    partial_avatar_generation: bool = False

    def elapsed_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.in_progress or self.start_time is None:
            return 0
        now = now or utcnow()
        return max(0, int((now - self.start_time).total_seconds()))
