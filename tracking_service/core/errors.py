"""
Tracking error taxonomy.

Structural errors (bad input, unknown entities, broken configuration) are raised
as TrackingError subclasses and abort the pipeline. Business outcomes such as
fraud or expired clicks are NOT exceptions; they end up as terminal statuses on
the TrackingEvent.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Error kinds surfaced to callers"""
    INVALID_EVENT = "INVALID_EVENT"
    INVALID_ORGANIZATION = "INVALID_ORGANIZATION"
    INVALID_CAMPAIGN = "INVALID_CAMPAIGN"
    INVALID_AFFILIATE = "INVALID_AFFILIATE"
    FRAUD_DETECTED = "FRAUD_DETECTED"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    EXPIRED_CLICK = "EXPIRED_CLICK"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"


class TrackingError(Exception):
    """Base tracking error with structured information"""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            **self.details,
        }


class InvalidEventError(TrackingError):
    """Malformed or incomplete event. Carries every violated constraint."""

    def __init__(self, message: str, violations: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.INVALID_EVENT,
            status_code=400,
            details={"violations": violations or []},
        )

    @property
    def violations(self) -> List[Dict[str, str]]:
        return self.details["violations"]


class InvalidOrganizationError(TrackingError):
    def __init__(self, organization_id: str):
        super().__init__(
            message=f"Unknown organization: {organization_id}",
            code=ErrorCode.INVALID_ORGANIZATION,
            status_code=404,
            details={"organizationId": organization_id},
        )


class InvalidCampaignError(TrackingError):
    def __init__(self, campaign_id: str, reason: str = "Unknown campaign"):
        super().__init__(
            message=f"{reason}: {campaign_id}",
            code=ErrorCode.INVALID_CAMPAIGN,
            status_code=404,
            details={"campaignId": campaign_id},
        )


class InvalidAffiliateError(TrackingError):
    def __init__(self, affiliate_id: str, campaign_id: str):
        super().__init__(
            message=f"Affiliate {affiliate_id} is not enrolled in campaign {campaign_id}",
            code=ErrorCode.INVALID_AFFILIATE,
            status_code=404,
            details={"affiliateId": affiliate_id, "campaignId": campaign_id},
        )


class DuplicateEventError(TrackingError):
    """Event id already belongs to another organization's event"""

    def __init__(self, event_id: str):
        super().__init__(
            message=f"Event id already in use: {event_id}",
            code=ErrorCode.DUPLICATE_EVENT,
            status_code=409,
            details={"eventId": event_id},
        )


class ValidationFailedError(TrackingError):
    """Rule or configuration error (e.g. percentage payout with no base value)"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_FAILED,
            status_code=422,
            details=details,
        )


class RateLimitExceededError(TrackingError):
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(
            message=message,
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            status_code=429,
            retry_after=retry_after,
        )


class UnauthorizedError(TrackingError):
    def __init__(self, message: str = "Invalid organization key"):
        super().__init__(
            message=message,
            code=ErrorCode.UNAUTHORIZED,
            status_code=401,
        )


class EventNotFoundError(TrackingError):
    def __init__(self, event_id: str):
        super().__init__(
            message=f"Event not found: {event_id}",
            code=ErrorCode.EVENT_NOT_FOUND,
            status_code=404,
            details={"eventId": event_id},
        )
