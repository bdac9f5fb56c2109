"""The start API UI contexts are allowed to call, and nothing more."""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from closet.jobs.models import GenerationJob, SizePreference


class JobDispatcher(ABC):
    """Owner of generation jobs, as seen from the HTTP layer.

    The ``request_*`` methods check preconditions and raise
    ``PreconditionFailed`` before anything is written; ``submit`` raises
    ``JobAlreadyRunning`` while another job holds the in-progress flag.
    """

    @abstractmethod
    async def submit(self, job: GenerationJob) -> str:
        """Mark a job Running and queue it. Returns job_id."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[GenerationJob]:
        ...

    @abstractmethod
    async def request_tryon(
        self, clothing_refs: Sequence[str], size_preference: SizePreference = SizePreference.FIT
    ) -> GenerationJob:
        ...

    @abstractmethod
    async def request_avatar_batch(self, photos: Sequence[bytes]) -> GenerationJob:
        ...

    @abstractmethod
    async def request_avatar_retry(
        self, photos: Optional[Sequence[bytes]] = None, poses: Optional[Sequence[int]] = None
    ) -> GenerationJob:
        """Re-run failed poses only."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Recover leftover state and start the worker."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...
