"""Server-sent events push channel.

Each connection is one listener on the notification hub. Messages are
best-effort: a slow client loses messages instead of stalling the worker.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

router = APIRouter()
logger = logging.getLogger(__name__)

_hub = None

KEEPALIVE_SECONDS = 15.0


def set_hub(hub):
    global _hub
    _hub = hub


@router.get("/events")
async def stream_events(request: Request):
    if _hub is None:
        raise HTTPException(status_code=503, detail="Push channel not initialized")
    hub = _hub
    queue = hub.subscribe()

    async def event_generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {message.get('action', 'message')}\ndata: {json.dumps(message)}\n\n"
        except asyncio.CancelledError:
            logger.debug("Event stream cancelled by client")
        finally:
            hub.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")
