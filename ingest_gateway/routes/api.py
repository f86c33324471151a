"""Control API routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ingest_gateway.dependencies import get_service
from stream_fanout.service import FanoutService

logger = logging.getLogger(__name__)

router = APIRouter()


class ClipRequest(BaseModel):
    """Clip extraction request."""

    timestamp: str = Field(..., description="Position in the recording (HH:MM:SS)")


@router.get("/streams")
async def get_streams(
    stats: bool = Query(False, description="Include CPU and memory usage"),
    service: FanoutService = Depends(get_service),
):
    """List live sessions and their running pipelines.

    Args:
        stats: Attach per-process and host resource usage.
        service: Fan-out service.

    Returns:
        dict: Sessions (and system stats when requested).
    """
    return service.list_streams(include_stats=stats)


@router.get("/config")
async def get_config(service: FanoutService = Depends(get_service)):
    """Current destinations, recording and transcription settings.

    Stream keys are never returned, only whether one is configured.
    """
    return service.describe_config()


@router.post("/config/reload")
async def reload_config(service: FanoutService = Depends(get_service)):
    """Re-read the configuration file and reconcile every live session.

    Raises:
        ConfigLoadError: If the file cannot be loaded; the previous
            configuration stays in effect.
    """
    snapshot = await service.config_provider.reload()
    return {
        "status": "reloaded",
        "active_destinations": sorted(snapshot.active_destinations()),
        "recording": snapshot.recording.is_active,
    }


@router.get("/recordings")
async def get_recordings(service: FanoutService = Depends(get_service)):
    """List recordings, newest first."""
    recordings = service.list_recordings()
    return {"recordings": [recording.to_dict() for recording in recordings]}


@router.post("/recordings/{filename}/transcribe", status_code=status.HTTP_202_ACCEPTED)
async def transcribe_recording(filename: str, service: FanoutService = Depends(get_service)):
    """Start transcription of a recording in the background.

    Raises:
        HTTPException: 400 for an invalid name, 409 if already in progress.
        RecordingNotFoundError: If the recording does not exist.
        RecordingInProgressError: If the recording is still being written (409).
    """
    try:
        scheduled = await service.transcribe_recording(filename)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not scheduled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{filename} is already being transcribed",
        )
    logger.info(f"Transcription requested for {filename}")
    return {"status": "transcribing", "filename": filename}


@router.get("/recordings/{filename}/transcription")
async def get_transcription(filename: str, service: FanoutService = Depends(get_service)):
    """Return the finished transcript of a recording.

    Raises:
        HTTPException: 400 for an invalid name.
        RecordingNotFoundError: Recording or transcript does not exist (404).
    """
    try:
        text = service.read_transcription(filename)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"filename": filename, "transcription": text}


@router.post("/recordings/{filename}/clip")
async def create_clip(
    filename: str,
    request: ClipRequest,
    service: FanoutService = Depends(get_service),
):
    """Cut a clip around a timestamp of a recording.

    Raises:
        ClipValidationError: Malformed timestamp or file name (400).
        RecordingNotFoundError: Recording does not exist (404).
        RecordingInProgressError: Recording is still being written (409).
        ClipExtractionError: The encoder failed (500).
    """
    clip = await service.extract_clip(filename, request.timestamp)
    return {"status": "created", "clip": clip.to_dict()}
