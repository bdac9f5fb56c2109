"""Cross-context monitor: keeps a UI context's view of the current job in step.

A monitor never writes job state. It reads the in-progress flag through a
``StatusSource`` and drives a ``MonitorView``:

    monitor = GenerationMonitor(StoreStatusSource(store.reader()), view)
    await monitor.start()        # resumes "in progress" UI if a job is running
    ...
    await monitor.on_push(msg)   # optional; polling alone is enough
    await monitor.stop()

Pushes only shorten the delay before a change is noticed. Correctness comes
from polling, so a context that missed every push still converges.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from closet.config import settings
from closet.jobs.models import (
    GenerationJob,
    GenerationStatus,
    JobStatus,
    Notification,
    NotificationLevel,
    utcnow,
)
from closet.notifications import NOTIFICATION, STATUS_CHANGED
from closet.storage.status_store import StatusStore

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    async def read_status(self) -> GenerationStatus: ...

    async def last_notification(self) -> Optional[Notification]: ...


class MonitorView(Protocol):
    def show_progress(self, elapsed_seconds: int) -> None: ...

    def hide_progress(self) -> None: ...

    def refresh_results(self) -> None: ...

    def notify(self, notification: Notification) -> None: ...


class StoreStatusSource:
    """Reads the durable store file directly."""

    def __init__(self, store: StatusStore):
        self._store = store.reader()

    async def read_status(self) -> GenerationStatus:
        return self._store.status()

    async def last_notification(self) -> Optional[Notification]:
        return self._store.last_notification()


class HttpStatusSource:
    """Reads status from a running background service."""

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self._base_url = (base_url or f"http://127.0.0.1:{settings.service_port}").rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=10.0)

    async def read_status(self) -> GenerationStatus:
        response = await self._http.get(f"{self._base_url}/status")
        response.raise_for_status()
        data = response.json()
        return GenerationStatus(
            in_progress=data.get("inProgress", False),
            start_time=data.get("startTime"),
            job=data.get("job"),
            partial_avatar_generation=data.get("partialAvatarGeneration", False),
        )

    async def last_notification(self) -> Optional[Notification]:
        response = await self._http.get(f"{self._base_url}/api/v1/notifications/last")
        response.raise_for_status()
        data = response.json()
        return Notification.model_validate(data) if data else None

    async def aclose(self) -> None:
        await self._http.aclose()


def _completion_fallback(job: Optional[GenerationJob], job_id: Optional[str]) -> Notification:
    if job is not None and job.status == JobStatus.FAILED:
        return Notification(level=NotificationLevel.ERROR, title="Generation Failed",
                            message=job.error or "Generation failed.", job_id=job.id)
    return Notification(level=NotificationLevel.SUCCESS, title="Generation Complete",
                        message="Your results are ready.", job_id=job_id)


class GenerationMonitor:
    """Read-only observer of the generation flag for one UI context."""

    def __init__(
        self,
        source: StatusSource,
        view: MonitorView,
        poll_interval: Optional[float] = None,
        slow_warning_after: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._source = source
        self._view = view
        self._poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self._slow_after = slow_warning_after if slow_warning_after is not None else settings.slow_warning_seconds
        self._clock = clock
        self._polling: Optional[asyncio.Task] = None
        self._in_progress = False
        self._job_id: Optional[str] = None
        self._slow_warned = False
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def polling(self) -> bool:
        return self._polling is not None and not self._polling.done()

    async def start(self) -> GenerationStatus:
        """Read the flag once; if a job is running, show it and start polling."""
        status = await self._source.read_status()
        if status.in_progress:
            self._enter_progress(status)
        return status

    async def stop(self) -> None:
        if self._polling is not None:
            self._polling.cancel()
            try:
                await self._polling
            except asyncio.CancelledError:
                pass
            self._polling = None

    async def check(self) -> GenerationStatus:
        """One poll: update the indicator, or finish up if the flag cleared."""
        async with self._lock:
            status = await self._source.read_status()
            if status.in_progress:
                job_id = status.job.id if status.job else None
                if self._in_progress and self._job_id is not None and job_id != self._job_id:
                    # the followed job ended and another started between two polls
                    await self._complete(status)
                if not self._in_progress:
                    self._enter_progress(status)
                else:
                    self._tick(status)
            elif self._in_progress:
                await self._complete(status)
            return status

    async def on_push(self, message: Dict[str, Any]) -> None:
        """React to a push message by polling immediately."""
        action = message.get("action")
        if action == STATUS_CHANGED:
            await self.check()
        elif action == NOTIFICATION and message.get("notification"):
            self._view.notify(Notification.model_validate(message["notification"]))

    def _enter_progress(self, status: GenerationStatus) -> None:
        self._in_progress = True
        self._job_id = status.job.id if status.job else None
        self._slow_warned = False
        self._tick(status)
        if not self.polling:
            self._polling = asyncio.create_task(self._poll_loop())

    def _tick(self, status: GenerationStatus) -> None:
        elapsed = status.elapsed_seconds(self._clock())
        self._view.show_progress(elapsed)
        if not self._slow_warned and elapsed >= self._slow_after:
            self._slow_warned = True
            self._view.notify(Notification(
                level=NotificationLevel.INFO,
                title="Still Working",
                message="Generation is taking longer than expected. You can keep browsing.",
                job_id=status.job.id if status.job else None,
            ))

    async def _complete(self, status: GenerationStatus) -> None:
        job_id = self._job_id or (status.job.id if status.job else None)
        finished = status.job if status.job is not None and status.job.id == job_id else None
        self._in_progress = False
        self._job_id = None
        self._view.hide_progress()
        self._view.refresh_results()
        notification = await self._source.last_notification()
        if notification is None or (job_id is not None and notification.job_id != job_id):
            notification = _completion_fallback(finished, job_id)
        self._view.notify(notification)

    async def _poll_loop(self) -> None:
        while self._in_progress:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.check()
            except (httpx.HTTPError, sqlite3.Error, OSError) as exc:
                # the background context may be restarting or holding the write lock; keep polling
                logger.warning("Status poll failed: %s", exc)
