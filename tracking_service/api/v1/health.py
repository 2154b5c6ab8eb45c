"""
Health Check Endpoints

- Liveness: the process answers
- Readiness: the tracking store answers
- Metrics: pipeline counters, circuit breakers, limiter and worker pool
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from tracking_service.core.circuit_breaker import get_all_circuit_breaker_stats
from tracking_service.core.metrics import metrics

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health status response"""
    status: str  # "healthy", "unhealthy"
    timestamp: str
    version: str = "1.0.0"
    uptime_seconds: Optional[float] = None
    store: Optional[str] = None


class MetricsResponse(BaseModel):
    timestamp: str
    tracking: Dict[str, Any]
    circuit_breakers: Dict[str, Any]
    rate_limiter: Dict[str, Any]
    worker_pool: Dict[str, Any]


SERVICE_START_TIME = datetime.now(timezone.utc)


def get_uptime() -> float:
    return (datetime.now(timezone.utc) - SERVICE_START_TIME).total_seconds()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=HealthStatus)
async def health_check():
    """Liveness probe: 200 while the process runs."""
    return HealthStatus(status="healthy", timestamp=_now(), uptime_seconds=get_uptime())


@router.get("/health/ready", response_model=HealthStatus)
async def readiness_check(request: Request, response: Response):
    """
    Readiness probe.

    Returns 503 while the tracking store does not answer.
    """
    store = request.app.state.store
    healthy = await store.ping()
    if not healthy:
        logger.warning("Readiness check failed: tracking store unreachable")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthStatus(
        status="healthy" if healthy else "unhealthy",
        timestamp=_now(),
        uptime_seconds=get_uptime(),
        store=type(store).__name__,
    )


@router.get("/health/metrics", response_model=MetricsResponse)
async def get_service_metrics(request: Request):
    pool = getattr(request.app.state, "worker_pool", None)
    limiter = request.app.state.rate_limiter
    return MetricsResponse(
        timestamp=_now(),
        tracking=metrics.export_metrics(),
        circuit_breakers=get_all_circuit_breaker_stats(),
        rate_limiter=limiter.stats.to_dict(),
        worker_pool=pool.get_stats() if pool is not None else {},
    )
