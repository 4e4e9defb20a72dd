"""
Health check endpoints.
"""

from fastapi import APIRouter, Request

from schemas.responses import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Reports the API version and whether the database connector is connected.
    """
    database = getattr(request.app.state, "database", None)
    connected = bool(database is not None and database.is_connected)

    return HealthResponse(
        status="healthy",
        version=request.app.state.settings.api_version,
        database="connected" if connected else "disconnected",
    )
