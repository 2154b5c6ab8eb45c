"""
Core tracking records: events, clicks, sessions and attribution snapshots.

Wire format is camelCase (what the browser SDK and webhooks speak); Python
attributes are snake_case. All timestamps are timezone-aware UTC datetimes.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MetadataValue = Union[bool, int, float, str]


class TrackingModel(BaseModel):
    """Base for all wire models"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """JSON-compatible dict with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class EventType(str, Enum):
    CLICK = "click"
    VISIT = "visit"
    SIGNUP = "signup"
    PURCHASE = "purchase"
    CUSTOM = "custom"


class AttributionModel(str, Enum):
    FIRST_CLICK = "first-click"
    LAST_CLICK = "last-click"
    LINEAR = "linear"
    TIME_DECAY = "time-decay"


class ValidationMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    WEBHOOK = "webhook"


class EventStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    FRAUD = "fraud"


TERMINAL_STATUSES = frozenset({EventStatus.VALIDATED, EventStatus.REJECTED, EventStatus.FRAUD})


class ClickState(str, Enum):
    OPEN = "open"
    CONVERTED = "converted"
    EXPIRED = "expired"


class EventContext(TrackingModel):
    """
    Point-in-time request context.

    url, user_agent, ip and timestamp are always present once sanitized;
    everything else is best-effort.
    """
    url: str
    referrer: Optional[str] = None
    title: Optional[str] = None

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    user_agent: str
    ip: str
    language: Optional[str] = None
    screen_resolution: Optional[str] = None
    device_fingerprint: Optional[str] = None

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None

    timestamp: datetime


class Touchpoint(TrackingModel):
    """One click resolved into affiliate/campaign/time at attribution time"""
    click_id: str
    affiliate_id: str
    campaign_id: str
    timestamp: datetime
    type: EventType = EventType.CLICK
    weight: Optional[float] = None


class AttributionData(TrackingModel):
    model: AttributionModel
    touchpoints: List[Touchpoint]
    attributed_affiliate_id: str
    attributed_click_id: str
    attribution_weight: float = Field(..., ge=0.0, le=1.0)
    conversion_window: int  # seconds


class TrackingEvent(TrackingModel):
    """
    Immutable record of one interaction.

    Created ``pending`` and moved exactly once to a terminal status; the only
    later change is attaching the payout when a reviewed conversion is approved.
    """
    id: str
    type: EventType
    timestamp: datetime

    organization_id: str
    campaign_id: str
    affiliate_id: str

    session_id: str
    click_id: Optional[str] = None
    visitor_id: Optional[str] = None

    user_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    custom_event_name: Optional[str] = None

    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)
    context: EventContext

    attribution: Optional[AttributionData] = None

    status: EventStatus = EventStatus.PENDING
    rejection_reason: Optional[str] = None
    fraud_flags: List[str] = Field(default_factory=list)

    payout: Optional[Decimal] = None
    payout_currency: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ClickData(TrackingModel):
    """An attribution window opened by a click"""
    id: str
    timestamp: datetime

    affiliate_id: str
    campaign_id: str
    organization_id: str

    session_id: str
    visitor_id: str

    context: EventContext

    expires_at: datetime

    converted: bool = False
    conversion_id: Optional[str] = None
    conversion_type: Optional[EventType] = None
    conversion_timestamp: Optional[datetime] = None

    def state_at(self, now: datetime) -> ClickState:
        """Expiry is evaluated lazily on read; no sweeper is required."""
        if self.converted:
            return ClickState.CONVERTED
        if now > self.expires_at:
            return ClickState.EXPIRED
        return ClickState.OPEN


class SessionData(TrackingModel):
    """Visitor-scoped aggregate, mutated once per event"""
    id: str
    visitor_id: str

    start_time: datetime
    last_activity_time: datetime

    page_views: int = 0
    events: List[str] = Field(default_factory=list)

    first_click_id: Optional[str] = None
    last_click_id: Optional[str] = None
    all_click_ids: List[str] = Field(default_factory=list)

    initial_referrer: Optional[str] = None
    initial_url: Optional[str] = None

    device_fingerprint: Optional[str] = None
    ip: str

    @property
    def duration_seconds(self) -> float:
        return (self.last_activity_time - self.start_time).total_seconds()
