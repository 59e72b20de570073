"""
Health check routes.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import Response

from visitqueue import __version__
from visitqueue.api.dependencies import Controller
from visitqueue.engine.controller import QueueController
from visitqueue.observability.metrics import get_metrics
from visitqueue.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _store_healthy(controller: QueueController) -> bool:
    try:
        await controller.ping()
    except Exception as e:
        logger.warning("Queue store health check failed", extra={"error": str(e)})
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and queue store.",
)
async def health_check(controller: Controller) -> HealthResponse:
    """
    Perform a health check.

    Returns:
        HealthResponse with service status.
    """
    store_healthy = await _store_healthy(controller)
    return HealthResponse(
        status="healthy" if store_healthy else "degraded",
        version=__version__,
        store="healthy" if store_healthy else "unhealthy",
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(controller: Controller) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _store_healthy(controller)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
