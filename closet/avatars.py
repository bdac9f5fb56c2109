"""Avatar selection and deletion.

Generation is owned by the coordinator; these are the user-driven edits to
the avatar list that happen outside a job. Both refuse to run while a job
is in progress, since a finishing avatar batch rewrites the whole list.
"""

import logging
from typing import List, Tuple

from closet.errors import JobAlreadyRunning
from closet.jobs.models import AvatarRecord
from closet.storage import status_store as keys
from closet.storage.status_store import StatusStore, clamp_index

logger = logging.getLogger(__name__)


class AvatarEditError(ValueError):
    """Rejected selection or deletion."""


def _load(txn) -> List[AvatarRecord]:
    return [AvatarRecord.model_validate(a) for a in txn.get(keys.AVATARS, [])]


def selectable(store: StatusStore) -> List[Tuple[int, AvatarRecord]]:
    """(index, avatar) for every avatar a try-on could use."""
    return [(i, a) for i, a in enumerate(store.avatars()) if a.usable]


def select_avatar(store: StatusStore, index: int) -> AvatarRecord:
    with store.transaction() as txn:
        if txn.get(keys.GENERATION_IN_PROGRESS, False):
            raise JobAlreadyRunning("Cannot change avatars while a generation is running")
        avatars = _load(txn)
        if not 0 <= index < len(avatars):
            raise AvatarEditError(f"No avatar at index {index}")
        if not avatars[index].usable:
            raise AvatarEditError(f"Avatar {avatars[index].pose_id} failed to generate")
        txn.set(keys.SELECTED_AVATAR_INDEX, index)
    logger.info("Selected avatar %d (%s)", index, avatars[index].pose_id)
    return avatars[index]


def delete_avatar(store: StatusStore, index: int) -> List[AvatarRecord]:
    """Remove one avatar and keep the selection pointing at the same record."""
    with store.transaction() as txn:
        if txn.get(keys.GENERATION_IN_PROGRESS, False):
            raise JobAlreadyRunning("Cannot change avatars while a generation is running")
        avatars = _load(txn)
        if not 0 <= index < len(avatars):
            raise AvatarEditError(f"No avatar at index {index}")
        if len(avatars) == 1:
            raise AvatarEditError("Cannot delete the last avatar")

        selected = clamp_index(txn.get(keys.SELECTED_AVATAR_INDEX, 0), len(avatars))
        removed = avatars.pop(index)
        if index < selected:
            selected -= 1
        selected = clamp_index(selected, len(avatars))
        if not avatars[selected].usable:
            selected = next((i for i, a in enumerate(avatars) if a.usable), selected)

        txn.set(keys.AVATARS, [a.model_dump(mode="json") for a in avatars])
        txn.set(keys.SELECTED_AVATAR_INDEX, selected)
        txn.set(keys.PARTIAL_AVATAR_GENERATION, any(not a.usable for a in avatars))
    logger.info("Deleted avatar %d (%s)", index, removed.pose_id)
    return avatars
