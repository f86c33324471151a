"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from stream_fanout.service import FanoutService


def get_service(request: Request) -> FanoutService:
    """Get the fan-out service attached to the application.

    Raises:
        HTTPException: If the service has not been started.
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Fan-out service not available",
        )
    return service
