"""User-facing notifications and the best-effort push channel to open UI contexts.

Pushes are a latency optimization only. A message published with no
listener attached is dropped silently, and a slow listener whose queue is
full loses messages rather than blocking the publisher. Monitors must
still poll the status store.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from closet.errors import GenerationError, PreconditionFailed, USER_MESSAGES, ErrorKind
from closet.jobs.models import GenerationJob, JobKind, Notification, NotificationLevel

logger = logging.getLogger(__name__)

STATUS_CHANGED = "generationStatusChanged"
NOTIFICATION = "notification"


def status_message(in_progress: bool, start_time: Optional[str]) -> Dict[str, Any]:
    return {"action": STATUS_CHANGED, "inProgress": in_progress, "startTime": start_time}


def _results_action(job: GenerationJob) -> str:
    return "avatars" if job.kind == JobKind.AVATAR_BATCH else "outfits"


def success_notification(job: GenerationJob, detail: str = "") -> Notification:
    if job.kind == JobKind.AVATAR_BATCH:
        title = "Avatar Ready!" if not job.is_retry else "Avatar Poses Updated"
        message = detail or "Your avatars have been generated."
    else:
        title = "Try-On Complete!"
        message = detail or "Virtual try-on ready. Click to view!"
    return Notification(
        level=NotificationLevel.SUCCESS,
        title=title,
        message=message,
        action=_results_action(job),
        job_id=job.id,
    )


def partial_notification(job: GenerationJob, succeeded: int, requested: int) -> Notification:
    return Notification(
        level=NotificationLevel.WARNING,
        title="Some Avatars Failed",
        message=f"Generated {succeeded} of {requested} avatar poses. You can retry the failed ones.",
        action="avatars",
        job_id=job.id,
    )


def error_notification(exc: BaseException, job: Optional[GenerationJob] = None) -> Notification:
    if isinstance(exc, GenerationError):
        title, message = exc.title_and_message()
        routes = exc.routes_to_settings
    else:
        title, message = USER_MESSAGES[ErrorKind.UNKNOWN]
        routes = False
    if routes:
        action = "settings"
    elif job is not None:
        action = _results_action(job)
    else:
        action = None
    return Notification(
        level=NotificationLevel.ERROR,
        title=title,
        message=message,
        action=action,
        job_id=job.id if job else None,
    )


def precondition_notification(exc: PreconditionFailed) -> Notification:
    title, message = exc.title_and_message()
    if exc.routes_to_settings:
        action = "settings"
    elif exc.reason in ("missing_avatar", "invalid_avatar", "no_failed_poses", "missing_source_photos"):
        action = "avatars"
    else:
        action = "wardrobe"
    return Notification(level=NotificationLevel.WARNING, title=title, message=message, action=action)


class NotificationHub:
    """Fan-out of push messages to whichever listeners are attached right now."""

    def __init__(self, queue_size: int = 32):
        self._listeners: Set[asyncio.Queue] = set()
        self._queue_size = queue_size

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    def publish(self, message: Dict[str, Any]) -> int:
        """Deliver to every listener that has room. Returns delivered count."""
        delivered = 0
        for queue in list(self._listeners):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.debug("Push listener queue full, dropping %s", message.get("action"))
        return delivered

    def publish_status(self, in_progress: bool, start_time: Optional[str]) -> int:
        return self.publish(status_message(in_progress, start_time))

    def publish_notification(self, notification: Notification) -> int:
        return self.publish({"action": NOTIFICATION, "notification": notification.model_dump(mode="json")})


def pending_messages(queue: asyncio.Queue) -> List[Dict[str, Any]]:
    """Drain whatever is queued without waiting."""
    messages = []
    while True:
        try:
            messages.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return messages
