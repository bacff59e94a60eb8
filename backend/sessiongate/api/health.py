"""Health check endpoint with database connectivity check.

Not gated; container orchestration probes it without a session.
"""

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from sessiongate.core import check_db_connection, settings
from sessiongate.core.retry import CircuitBreaker, CircuitState

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    identity: str = "unknown"


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database is unavailable. The identity field reports the
    identity provider circuit breaker without calling the provider.
    """
    db_healthy = await check_db_connection()

    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    breaker = CircuitBreaker.get("identity_jwks")
    if breaker is None:
        identity = "unknown"
    else:
        identity = "unavailable" if breaker.state == CircuitState.OPEN else "available"

    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        identity=identity,
    )
