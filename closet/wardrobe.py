"""Wardrobe: clothing images saved from uploads or from external pages.

Every added image is preprocessed with the high-fidelity profile before it
is stored, so two captures of the same picture land on the same blob ref
and the second one is reported as a duplicate instead of appended.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from closet.generation.client import GenerationClient
from closet.imaging.preprocess import HIGH_FIDELITY, preprocess
from closet.jobs.models import ClothingItem, SourceMetadata
from closet.storage.blobs import ImageBlobStore
from closet.storage.status_store import StatusStore

logger = logging.getLogger(__name__)


@dataclass
class AddResult:
    added: bool
    item: ClothingItem


class Wardrobe:
    def __init__(self, store: StatusStore, blobs: ImageBlobStore, client: GenerationClient):
        self._store = store
        self._blobs = blobs
        self._client = client

    def items(self) -> List[ClothingItem]:
        return self._store.clothing_items()

    async def add_upload(self, raw: bytes, metadata: Optional[SourceMetadata] = None) -> AddResult:
        """Compress and store an uploaded image. Raises CompressionError on bad input."""
        loop = asyncio.get_running_loop()
        encoded = await loop.run_in_executor(None, preprocess, raw, HIGH_FIDELITY)
        ref = self._blobs.put(encoded.data, encoded.mime_type)
        item = ClothingItem(image_ref=ref, source_metadata=metadata)
        added = self._store.append_clothing_item(item)
        if added:
            logger.info("Added clothing item %s (%d bytes)", ref[:12], encoded.size)
        else:
            logger.info("Clothing item %s already in wardrobe", ref[:12])
            item = next((c for c in self._store.clothing_items() if c.image_ref == ref), item)
        return AddResult(added=added, item=item)

    async def add_external_image(self, url: str, metadata: Optional[SourceMetadata] = None) -> AddResult:
        """Fetch an image from a page the user is browsing and add it."""
        raw = await self._client.fetch_image(url)
        metadata = metadata or SourceMetadata()
        if metadata.image_url is None:
            metadata = metadata.model_copy(update={"image_url": url})
        return await self.add_upload(raw, metadata)

    def remove(self, image_ref: str) -> bool:
        """Drop the item from the list. The blob is left for orphan cleanup,
        since outfits may still reference it."""
        removed = self._store.remove_clothing_item(image_ref)
        if removed:
            logger.info("Removed clothing item %s", image_ref[:12])
        return removed
