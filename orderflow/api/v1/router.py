"""
API v1 Router - Main Entry Point
Aggregates all v1 API endpoints for the lifecycle service
"""
from fastapi import APIRouter

from orderflow import __version__
from orderflow.api.v1 import transitions

router = APIRouter(
    responses={
        402: {"description": "Payment Failed"},
        403: {"description": "Forbidden"},
        404: {"description": "Not Found"},
        409: {"description": "Conflict"},
        422: {"description": "Validation Error"},
        500: {"description": "Internal Server Error"},
    }
)

router.include_router(transitions.router)


@router.get("/health", tags=["System Health"])
def api_health_check():
    return {
        "status": "healthy",
        "version": __version__,
        "api_version": "v1",
    }
