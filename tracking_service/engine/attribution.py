"""
Attribution Engine
Distributes credit for a conversion across the visitor's touchpoints.

All functions here are pure: clicks come in already filtered to the
conversion window and in the visitor's append order, and nothing is written
back to the store.

Models:
- first-click: full credit to the earliest touchpoint
- last-click: full credit to the latest touchpoint
- linear: 1/n to each of n touchpoints
- time-decay: weight proportional to 2^(-dt/half_life), normalized to sum to 1

Ties (equal timestamps under first/last-click, equal weights when picking the
payee) go to the touchpoint appended first.
"""
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from tracking_service.models.tracking import AttributionData, AttributionModel, ClickData, Touchpoint

logger = logging.getLogger(__name__)


def resolve_model(
    declared: Optional[AttributionModel],
    campaign_default: Optional[AttributionModel],
    service_default: str,
) -> AttributionModel:
    """Request-declared model, then the campaign's, then the service default."""
    if declared is not None:
        return declared
    if campaign_default is not None:
        return campaign_default
    return AttributionModel(service_default)


def resolve_window(
    declared_seconds: Optional[int],
    rule_seconds: Optional[int],
    default_seconds: int,
) -> int:
    """The tighter of the declared and rule windows; the default if neither is set."""
    candidates = [w for w in (declared_seconds, rule_seconds) if w]
    return min(candidates) if candidates else default_seconds


def first_click_weights(timestamps: Sequence[datetime]) -> List[float]:
    winner = min(range(len(timestamps)), key=lambda i: (timestamps[i], i))
    return [1.0 if i == winner else 0.0 for i in range(len(timestamps))]


def last_click_weights(timestamps: Sequence[datetime]) -> List[float]:
    latest = max(timestamps)
    winner = next(i for i, ts in enumerate(timestamps) if ts == latest)
    return [1.0 if i == winner else 0.0 for i in range(len(timestamps))]


def linear_weights(timestamps: Sequence[datetime]) -> List[float]:
    n = len(timestamps)
    return [1.0 / n] * n


def time_decay_weights(
    timestamps: Sequence[datetime],
    conversion_time: datetime,
    half_life_seconds: float,
) -> List[float]:
    ages = [max(0.0, (conversion_time - ts).total_seconds()) for ts in timestamps]
    # Shift by the youngest age so the largest raw weight is 1.0 and nothing underflows
    youngest = min(ages)
    raw = [2.0 ** (-(age - youngest) / half_life_seconds) for age in ages]
    total = sum(raw)
    return [w / total for w in raw]


def compute_weights(
    model: AttributionModel,
    timestamps: Sequence[datetime],
    conversion_time: datetime,
    half_life_seconds: float,
) -> List[float]:
    if not timestamps:
        return []
    if model == AttributionModel.FIRST_CLICK:
        return first_click_weights(timestamps)
    if model == AttributionModel.LAST_CLICK:
        return last_click_weights(timestamps)
    if model == AttributionModel.LINEAR:
        return linear_weights(timestamps)
    if model == AttributionModel.TIME_DECAY:
        return time_decay_weights(timestamps, conversion_time, half_life_seconds)
    raise ValueError(f"Unsupported attribution model: {model}")


def pick_payee(weights: Sequence[float]) -> int:
    """Index of the highest weight, earliest index among equals."""
    best = 0
    for i, weight in enumerate(weights):
        if weight > weights[best]:
            best = i
    return best


def attribute(
    model: AttributionModel,
    clicks: Sequence[ClickData],
    conversion_time: datetime,
    conversion_window_seconds: int,
    half_life_seconds: float,
) -> Optional[AttributionData]:
    """
    Attribute a conversion to ``clicks``.

    Returns None when there is no touchpoint to credit.
    """
    if not clicks:
        return None

    weights = compute_weights(model, [c.timestamp for c in clicks], conversion_time, half_life_seconds)
    payee = pick_payee(weights)

    touchpoints = [
        Touchpoint(
            click_id=click.id,
            affiliate_id=click.affiliate_id,
            campaign_id=click.campaign_id,
            timestamp=click.timestamp,
            weight=weight,
        )
        for click, weight in zip(clicks, weights)
    ]

    logger.debug(
        f"Attributed under {model.value}: {len(clicks)} touchpoint(s), "
        f"payee {clicks[payee].affiliate_id} ({weights[payee]:.3f})"
    )

    return AttributionData(
        model=model,
        touchpoints=touchpoints,
        attributed_affiliate_id=clicks[payee].affiliate_id,
        attributed_click_id=clicks[payee].id,
        attribution_weight=min(1.0, weights[payee]),
        conversion_window=conversion_window_seconds,
    )
