"""Global error handling middleware."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stream_fanout.exceptions import (
    ClipExtractionError,
    ClipValidationError,
    ConfigLoadError,
    RecordingInProgressError,
    RecordingNotFoundError,
)

logger = logging.getLogger(__name__)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup global exception handlers for the app.

    Args:
        app: FastAPI application instance.
    """

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors."""
        logger.warning(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors(), "message": "Validation error"},
        )

    @app.exception_handler(ClipValidationError)
    async def clip_validation_handler(request: Request, exc: ClipValidationError):
        logger.warning(f"Rejected clip request: {exc}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc)},
        )

    @app.exception_handler(RecordingNotFoundError)
    async def not_found_handler(request: Request, exc: RecordingNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc)},
        )

    @app.exception_handler(RecordingInProgressError)
    async def in_progress_handler(request: Request, exc: RecordingInProgressError):
        """Handle requests for a recording its encoder is still writing."""
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc)},
        )

    @app.exception_handler(ClipExtractionError)
    async def clip_extraction_handler(request: Request, exc: ClipExtractionError):
        """Handle encoder failures during clip extraction."""
        logger.error(f"Clip extraction failed: {exc} (exit code {exc.returncode})")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": str(exc),
                "returncode": exc.returncode,
                "stderr": exc.stderr if app.debug else "",
            },
        )

    @app.exception_handler(ConfigLoadError)
    async def config_load_handler(request: Request, exc: ConfigLoadError):
        """Handle an unreadable or invalid configuration file."""
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "message": "Configuration not applied"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "message": str(exc) if app.debug else "An error occurred",
            },
        )
