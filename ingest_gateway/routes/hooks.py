"""nginx-rtmp notification callbacks.

The media server posts ``application/x-www-form-urlencoded`` bodies with the
application (``app``) and stream (``name``) of the publisher. Publishing is
never refused here, so every hook answers 200.
"""

import logging

from fastapi import APIRouter, Depends, Form

from ingest_gateway.dependencies import get_service
from stream_fanout.service import FanoutService

logger = logging.getLogger(__name__)

router = APIRouter()


def _ingest_path(app: str, name: str) -> str:
    return f"/{app.strip('/')}/{name.strip('/')}"


@router.post("/on_publish")
async def on_publish(
    app: str = Form(...),
    name: str = Form(...),
    service: FanoutService = Depends(get_service),
):
    """Start fan-out for a new publisher.

    Args:
        app: RTMP application name.
        name: Stream name (the session key).
        service: Fan-out service.

    Returns:
        dict: Whether a session was started and its destinations.
    """
    path = _ingest_path(app, name)
    try:
        session = await service.registry.on_ingest_start(path)
    except Exception as e:
        logger.error(f"on_publish for {path} failed: {e}", exc_info=True)
        session = None

    if session is None:
        return {"status": "ignored", "path": path}
    return {"status": "started", "path": path, "destinations": session.destination_ids}


@router.post("/on_publish_done")
async def on_publish_done(
    app: str = Form(...),
    name: str = Form(...),
    service: FanoutService = Depends(get_service),
):
    """Tear down fan-out when the publisher disconnects."""
    path = _ingest_path(app, name)
    try:
        stopped = await service.registry.on_ingest_stop(path)
    except Exception as e:
        logger.error(f"on_publish_done for {path} failed: {e}", exc_info=True)
        stopped = False

    return {"status": "stopped" if stopped else "ignored", "path": path}
