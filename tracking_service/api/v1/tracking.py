"""
Tracking API Endpoints
Event ingestion, batch ingestion, conversion review, event lookup and
affiliate summaries.

SECURITY: every endpoint requires the X-Organization-Key of the organization
it acts on.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from tracking_service.core.errors import InvalidEventError, RateLimitExceededError
from tracking_service.core.metrics import metrics
from tracking_service.core.rate_limiter import RateLimiter
from tracking_service.middleware.auth import authorize, organization_key
from tracking_service.orchestrator.pipeline import EventPipeline

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Tracking"])


class BatchTrackResponse(BaseModel):
    """Per-item results, in submission order"""
    success: bool = True
    results: list = Field(default_factory=list)


def get_pipeline(request: Request) -> EventPipeline:
    return request.app.state.pipeline


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _organization_of(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        organization_id = payload.get("organizationId")
        if isinstance(organization_id, str) and organization_id:
            return organization_id
    return None


def _throttle(limiter: RateLimiter, organization_id: str, cost: int = 1):
    try:
        limiter.check(organization_id, cost=cost)
    except RateLimitExceededError:
        metrics.rate_limit_rejections.inc()
        raise


@router.post("/track")
async def track_event(
    request: Request,
    payload: Any = Body(...),
    key: str = Depends(organization_key),
    pipeline: EventPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Track one event (click, conversion or plain activity).

    Business outcomes (fraud, expired clicks, rule rejections) are 200 with
    ``success: false``; malformed or unknown references raise.
    """
    organization_id = _organization_of(payload)
    if organization_id:
        await authorize(pipeline.directory, organization_id, key)
        _throttle(limiter, organization_id)

    outcome = await pipeline.track(
        payload,
        request_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    headers = {"X-Idempotent-Replay": "true"} if outcome.replayed else None
    return Response(content=outcome.body, media_type="application/json", headers=headers)


@router.post("/track/batch", response_model=BatchTrackResponse)
async def track_batch(
    request: Request,
    body: Dict[str, Any] = Body(...),
    key: str = Depends(organization_key),
    pipeline: EventPipeline = Depends(get_pipeline),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """
    Track up to BATCH_MAX_EVENTS events: ``{"events": [...]}``.

    Each item gets its own response or error entry.
    """
    events = body.get("events")
    if not isinstance(events, list):
        raise InvalidEventError(
            "Batch body must carry an events list",
            [{"field": "events", "message": "must be a list of events"}],
        )

    costs: Dict[str, int] = {}
    for item in events:
        organization_id = _organization_of(item)
        if organization_id:
            costs[organization_id] = costs.get(organization_id, 0) + 1
    for organization_id in costs:
        await authorize(pipeline.directory, organization_id, key)
    for organization_id, cost in costs.items():
        _throttle(limiter, organization_id, cost=cost)

    results = await pipeline.track_batch(
        events,
        request_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    logger.info(f"Batch of {len(events)} events processed")
    return BatchTrackResponse(results=results)


@router.post("/conversions/validate")
async def validate_conversion(
    payload: Any = Body(...),
    key: str = Depends(organization_key),
    pipeline: EventPipeline = Depends(get_pipeline),
):
    """Approve or reject a conversion held for manual or webhook review."""
    organization_id = _organization_of(payload)
    if organization_id:
        await authorize(pipeline.directory, organization_id, key)
    response = await pipeline.validate_conversion(payload)
    return response.to_wire()


@router.get("/events/{event_id}")
async def get_event(
    event_id: str,
    organization_id: str = Query(..., alias="organizationId"),
    key: str = Depends(organization_key),
    pipeline: EventPipeline = Depends(get_pipeline),
):
    """Stored TrackingEvent of the caller's organization."""
    await authorize(pipeline.directory, organization_id, key)
    event = await pipeline.get_event(organization_id, event_id)
    return event.to_wire()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@router.get("/affiliates/{affiliate_id}/summary")
async def affiliate_summary(
    affiliate_id: str,
    organization_id: str = Query(..., alias="organizationId"),
    start: Optional[datetime] = Query(None, alias="from"),
    end: Optional[datetime] = Query(None, alias="to"),
    key: str = Depends(organization_key),
    pipeline: EventPipeline = Depends(get_pipeline),
):
    """
    Clicks, converted clicks and conversion rate of one affiliate.

    The range defaults to the last SUMMARY_DEFAULT_RANGE_SECONDS ending now;
    timestamps without an offset are read as UTC.
    """
    await authorize(pipeline.directory, organization_id, key)

    end = _as_utc(end) if end else pipeline.clock()
    if start is None:
        start = end - timedelta(seconds=pipeline.settings.SUMMARY_DEFAULT_RANGE_SECONDS)
    start = _as_utc(start)
    if start > end:
        raise InvalidEventError(
            "Summary range starts after it ends",
            [{"field": "from", "message": "must not be later than to"}],
        )

    summary = await pipeline.affiliate_summary(organization_id, affiliate_id, start, end)
    return summary.to_wire()
