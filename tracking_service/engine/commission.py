"""
Commission Calculator
Turns a PayoutConfig and an accepted conversion into a payout amount.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Tuple

from tracking_service.core.errors import ValidationFailedError
from tracking_service.models.commission import PayoutConfig
from tracking_service.models.tracking import TrackingEvent

CENT = Decimal("0.01")
HUNDRED = Decimal(100)


def _base_amount(event: TrackingEvent, base_field: Optional[str]) -> Optional[Decimal]:
    """
    Value a percentage payout is taken of: ``metadata[base_field]`` when a base
    field is configured, else the event amount.
    """
    if base_field:
        raw = event.metadata.get(base_field)
        if raw is None and base_field == "amount":
            raw = event.amount
    else:
        raw = event.amount

    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def compute_payout(event: TrackingEvent, config: PayoutConfig) -> Tuple[Decimal, str]:
    """
    Payout for ``event`` in ``config.currency``, rounded half-up to cents.

    Clamping to [minPayout, maxPayout] only bounds the number, it never
    rejects. A percentage rule with nothing to take the percentage of is a
    configuration error, not a zero payout.
    """
    if config.is_percentage:
        base = _base_amount(event, config.base_field)
        if base is None:
            raise ValidationFailedError(
                f"Percentage payout needs a numeric "
                f"{config.base_field or 'amount'} on {event.type.value} events",
                details={"eventId": event.id, "baseField": config.base_field or "amount"},
            )
        payout = base * config.amount / HUNDRED
    else:
        payout = config.amount

    if config.min_payout is not None and payout < config.min_payout:
        payout = config.min_payout
    if config.max_payout is not None and payout > config.max_payout:
        payout = config.max_payout

    return payout.quantize(CENT, rounding=ROUND_HALF_UP), config.currency
