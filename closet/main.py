"""Closet try-on background service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from closet.config import settings
from closet.api.v1.router import v1_router, root_router
from closet.api.v1 import avatars as avatars_api
from closet.api.v1 import events as events_api
from closet.api.v1 import images as images_api
from closet.api.v1 import jobs as jobs_api
from closet.api.v1 import notifications as notifications_api
from closet.api.v1 import outfits as outfits_api
from closet.api.v1 import settings_api
from closet.api.v1 import wardrobe as wardrobe_api
from closet.generation.client import GenerationClient
from closet.jobs.coordinator import JobCoordinator
from closet.notifications import NotificationHub
from closet.storage.blobs import ImageBlobStore
from closet.storage.status_store import StatusStore
from closet.wardrobe import Wardrobe

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("closet")

# Global coordinator reference
_coordinator = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _coordinator

    logger.info("Starting closet try-on service on port %d", settings.service_port)
    logger.info("Data dir: %s", settings.data_dir)
    logger.info("Image model: %s", settings.image_model)

    store = StatusStore(settings.store_path)
    blobs = ImageBlobStore(settings.images_dir)
    client = GenerationClient()
    hub = NotificationHub()

    _coordinator = JobCoordinator(store, blobs, client, hub)
    await _coordinator.start()
    logger.info("Job coordinator started")

    # Wire shared components into API endpoints
    jobs_api.set_coordinator(_coordinator)
    jobs_api.set_store(store)
    avatars_api.set_store(store)
    outfits_api.set_store(store)
    notifications_api.set_store(store)
    settings_api.set_store(store)
    settings_api.set_client(client)
    wardrobe_api.set_wardrobe(Wardrobe(store, blobs, client))
    events_api.set_hub(hub)
    images_api.set_blobs(blobs)

    yield

    # Shutdown
    logger.info("Shutting down closet try-on service")
    await _coordinator.stop()
    await client.aclose()
    removed = blobs.cleanup_orphans(store.referenced_refs(), settings.blob_orphan_ttl_hours)
    if removed:
        logger.info("Removed %d unreferenced image(s)", removed)


app = FastAPI(
    title="Closet Try-On Service",
    description="Background job coordinator for avatar generation and virtual try-on",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - UI contexts run on other origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(root_router)  # GET /health and GET /status at root
app.include_router(v1_router)  # All /api/v1/* endpoints


def run():
    import uvicorn

    uvicorn.run("closet.main:app", host="127.0.0.1", port=settings.service_port)


if __name__ == "__main__":
    run()
