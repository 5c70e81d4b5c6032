"""FastAPI dependencies shared by the routers."""

from fastapi import HTTPException, Request, status

from ..service import CaptureServiceManager


def get_service(request: Request) -> CaptureServiceManager:
    """
    The capture service attached to the app by create_app().

    Raises:
        HTTPException: 503 if the service has not been initialized
    """
    service = getattr(request.app.state, "capture_service", None)
    if service is None or service.registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Capture service not initialized",
        )
    return service
