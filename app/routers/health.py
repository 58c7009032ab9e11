"""
Health check routes.
"""
from fastapi import APIRouter, Request
from app.schemas.common import HealthResponse
import logging

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint at /health."""
    return HealthResponse(
        success=True,
        data={"status": "healthy"},
        message="OK"
    )


@router.get("/api/v1/health", response_model=HealthResponse)
def health_check_v1(request: Request):
    """
    Health check endpoint at /api/v1/health.

    Includes whether the primary session store answers. The service stays
    healthy without it because sessions fall back to the local cache.
    """
    container = getattr(request.app.state, "container", None)
    primary_ok = container.ping() if container is not None else False
    if not primary_ok:
        logger.warning("Health check: primary session store not reachable")

    return HealthResponse(
        success=True,
        data={
            "status": "healthy" if primary_ok else "degraded",
            "primary_store": "up" if primary_ok else "down",
        },
        message="OK"
    )


@router.get("/", response_model=HealthResponse)
async def root():
    """Root endpoint."""
    return HealthResponse(
        success=True,
        data={"message": "Permit conversation engine"},
        message="OK"
    )
