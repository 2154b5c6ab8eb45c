"""
Tracking service models
"""
from .tracking import (
    AttributionData,
    AttributionModel,
    ClickData,
    ClickState,
    EventContext,
    EventStatus,
    EventType,
    SessionData,
    Touchpoint,
    TrackingEvent,
    TrackingModel,
    ValidationMethod,
)
from .commission import (
    CampaignConfig,
    CommissionRule,
    FraudDetectionConfig,
    IpRestriction,
    OrganizationConfig,
    PayoutConfig,
)
from .requests import (
    AffiliateSummary,
    TrackEventRequest,
    TrackEventResponse,
    ValidateConversionRequest,
    ValidateConversionResponse,
    WebhookEvent,
    WebhookPayload,
    validate_conversion_request,
    validate_track_request,
)

__all__ = [
    # Records
    "AttributionData",
    "AttributionModel",
    "ClickData",
    "ClickState",
    "EventContext",
    "EventStatus",
    "EventType",
    "SessionData",
    "Touchpoint",
    "TrackingEvent",
    "TrackingModel",
    "ValidationMethod",
    # Campaign configuration
    "CampaignConfig",
    "CommissionRule",
    "FraudDetectionConfig",
    "IpRestriction",
    "OrganizationConfig",
    "PayoutConfig",
    # Boundary contracts
    "AffiliateSummary",
    "TrackEventRequest",
    "TrackEventResponse",
    "ValidateConversionRequest",
    "ValidateConversionResponse",
    "WebhookEvent",
    "WebhookPayload",
    "validate_conversion_request",
    "validate_track_request",
]
