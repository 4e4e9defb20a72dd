"""
API v1 router configuration.
"""

from fastapi import APIRouter

from api.v1.endpoints import health

api_router = APIRouter()

# Include endpoint routers
api_router.include_router(health.router, tags=["health"])
