"""Health check endpoint for the capture upload service."""

from fastapi import APIRouter, Request

from capture_upload.core.config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports service name and version, plus whether the grant broker is
    reachable when a session manager is running.
    """
    response = {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
    }
    manager = getattr(request.app.state, "manager", None)
    if manager is not None:
        broker_ok = await manager.broker.check_connection()
        response["broker"] = "healthy" if broker_ok else "unreachable"
    return response
