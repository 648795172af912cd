"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from payrecon_api import __version__

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database(request: Request) -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_paystack(request: Request) -> str:
    """Report whether the gateway credential is configured (no network call)."""
    if request.app.state.settings.paystack_configured:
        return "configured"
    return "down: PAYSTACK_SECRET_KEY not configured"


def _services(request: Request) -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(request),
        "paystack": check_paystack(request),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint.

    Always returns 200 OK (use /readyz for dependency gating).
    """
    return HealthResponse(status="healthy", version=__version__, services=_services(request))


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(request: Request, response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if any dependency is down.
    """
    services = _services(request)

    if any("down" in svc_status for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)
