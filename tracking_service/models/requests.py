"""
Boundary contracts: ingestion/review requests and responses, webhook payloads.

Validation is explicit: ``validate_track_request`` and
``validate_conversion_request`` return a typed request or raise
InvalidEventError listing every violated constraint.
"""
import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError, field_validator

from tracking_service.core.errors import InvalidEventError
from .tracking import AttributionModel, EventStatus, EventType, TrackingModel

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

_ID_FIELD = Field(..., min_length=1, max_length=255)
_OPTIONAL_ID_FIELD = Field(None, min_length=1, max_length=255)


class TrackEventRequest(TrackingModel):
    """
    Inbound event from the SDK or a server-side integration.

    Example:
    {
        "type": "purchase",
        "organizationId": "org_1",
        "campaignId": "cmp_1",
        "affiliateId": "aff_1",
        "orderId": "ord_42",
        "amount": 100,
        "currency": "USD",
        "visitorId": "vis_...",
        "context": {"url": "https://shop.example/checkout"}
    }
    """
    type: EventType

    organization_id: str = _ID_FIELD
    campaign_id: str = _ID_FIELD
    affiliate_id: str = _ID_FIELD

    # Client-chosen idempotency key
    event_id: Optional[str] = _OPTIONAL_ID_FIELD

    user_id: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=32)

    metadata: Optional[Dict[str, Any]] = None

    order_id: Optional[str] = Field(None, max_length=255)
    amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = None

    custom_event_name: Optional[str] = Field(None, max_length=255)

    context: Optional[Dict[str, Any]] = None

    session_id: Optional[str] = _OPTIONAL_ID_FIELD
    click_id: Optional[str] = _OPTIONAL_ID_FIELD
    visitor_id: Optional[str] = _OPTIONAL_ID_FIELD

    # SDKConfig values the client resolved the event under
    attribution_model: Optional[AttributionModel] = None
    conversion_window: Optional[int] = Field(None, gt=0)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if not EMAIL_RE.match(v):
            raise ValueError("invalid email address")
        return v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = re.sub(r"[\s\-\(\)]", "", v)
        if not PHONE_RE.match(v):
            raise ValueError("invalid phone number")
        return v

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.upper()
        if not CURRENCY_RE.match(v):
            raise ValueError("currency must be a 3-letter ISO code")
        return v


class TrackEventResponse(TrackingModel):
    success: bool
    event_id: str
    message: Optional[str] = None
    status: Optional[EventStatus] = None

    attributed: bool = False
    attributed_affiliate_id: Optional[str] = None

    validated: bool = False
    fraud_flags: List[str] = Field(default_factory=list)

    payout: Optional[Decimal] = None
    payout_currency: Optional[str] = None

    click_id: Optional[str] = None
    session_id: Optional[str] = None
    visitor_id: Optional[str] = None


class ValidateConversionRequest(TrackingModel):
    event_id: str = _ID_FIELD
    organization_id: str = _ID_FIELD
    approved: bool
    rejection_reason: Optional[str] = Field(None, max_length=500)


class ValidateConversionResponse(TrackingModel):
    success: bool
    event_id: str
    status: EventStatus
    payout: Optional[Decimal] = None
    payout_currency: Optional[str] = None
    rejection_reason: Optional[str] = None


class AffiliateSummary(TrackingModel):
    """Click and conversion counts of one affiliate over a date range"""
    organization_id: str
    affiliate_id: str
    start: datetime
    end: datetime
    total_clicks: int = 0
    converted_clicks: int = 0
    # Percent of clicks that converted, 0 when there were no clicks
    conversion_rate: float = 0.0


class WebhookEvent(str, Enum):
    CONVERSION_CREATED = "conversion.created"
    CONVERSION_VALIDATED = "conversion.validated"
    CONVERSION_REJECTED = "conversion.rejected"
    PAYOUT_PROCESSED = "payout.processed"


class WebhookPayload(TrackingModel):
    event: WebhookEvent
    timestamp: datetime
    data: Dict[str, Any]
    signature: str


def _violations_from(error: ValidationError) -> List[Dict[str, str]]:
    violations = []
    for err in error.errors():
        violations.append({
            "field": ".".join(str(loc) for loc in err["loc"]) or "__root__",
            "message": err["msg"],
        })
    return violations


def _conditional_violations(payload: Dict[str, Any]) -> List[Dict[str, str]]:
    """Cross-field requirements that depend on the event type."""
    violations = []
    event_type = payload.get("type")

    if event_type == EventType.PURCHASE.value:
        for field in ("orderId", "amount", "currency"):
            if payload.get(field) in (None, ""):
                violations.append({"field": field, "message": "required for purchase events"})

    if event_type == EventType.CUSTOM.value and not payload.get("customEventName"):
        violations.append({"field": "customEventName", "message": "required for custom events"})

    return violations


def validate_track_request(payload: Any) -> TrackEventRequest:
    """Validate a raw ingestion payload, reporting every violation at once."""
    if not isinstance(payload, dict):
        raise InvalidEventError(
            "Event payload must be a JSON object",
            [{"field": "__root__", "message": "expected an object"}],
        )

    violations: List[Dict[str, str]] = []
    request = None
    try:
        request = TrackEventRequest.model_validate(payload)
    except ValidationError as e:
        violations.extend(_violations_from(e))

    violations.extend(_conditional_violations(payload))

    if violations:
        raise InvalidEventError(
            f"Event validation failed: {len(violations)} violation(s)",
            violations,
        )
    return request


def validate_conversion_request(payload: Any) -> ValidateConversionRequest:
    if not isinstance(payload, dict):
        raise InvalidEventError(
            "Review payload must be a JSON object",
            [{"field": "__root__", "message": "expected an object"}],
        )

    violations: List[Dict[str, str]] = []
    request = None
    try:
        request = ValidateConversionRequest.model_validate(payload)
    except ValidationError as e:
        violations.extend(_violations_from(e))

    if payload.get("approved") is False and not payload.get("rejectionReason"):
        violations.append({"field": "rejectionReason", "message": "required when approved is false"})

    if violations:
        raise InvalidEventError(
            f"Review validation failed: {len(violations)} violation(s)",
            violations,
        )
    return request
