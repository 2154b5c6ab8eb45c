"""
Campaign-owned configuration read by the pipeline: commission rules, payout
configs and fraud detection settings. Read-only to this service.
"""
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from .tracking import AttributionModel, EventType, TrackingModel, ValidationMethod


class IpRestriction(str, Enum):
    NONE = "none"
    UNIQUE_PER_CONVERSION = "unique-per-conversion"
    UNIQUE_PER_DAY = "unique-per-day"


class PayoutConfig(TrackingModel):
    amount: Decimal = Field(..., ge=0)
    is_percentage: bool
    currency: str = Field("USD", min_length=3, max_length=3)
    base_field: Optional[str] = None
    min_payout: Optional[Decimal] = Field(None, ge=0)
    max_payout: Optional[Decimal] = Field(None, ge=0)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_clamp_order(self) -> "PayoutConfig":
        if self.min_payout is not None and self.max_payout is not None:
            if self.max_payout < self.min_payout:
                raise ValueError("maxPayout must be greater than or equal to minPayout")
        return self


class FraudDetectionConfig(TrackingModel):
    """Each rule is independently toggled; unset means disabled."""

    # Time-based (seconds)
    conversion_delay: Optional[int] = Field(None, ge=0)
    conversion_window: Optional[int] = Field(None, ge=0)

    # IP & device
    ip_restriction: IpRestriction = IpRestriction.NONE
    device_fingerprint_checks: bool = False
    proxy_vpn_detection: bool = False

    # User validation
    duplicate_email_phone_block: bool = False
    kyc_verified_only: bool = False  # evaluated outside this service

    # Geographic (ISO 3166-1 alpha-2)
    geo_targeting: List[str] = Field(default_factory=list)
    geo_blacklist: List[str] = Field(default_factory=list)

    # Order validation
    minimum_order_value: Optional[Decimal] = Field(None, ge=0)
    maximum_order_value: Optional[Decimal] = Field(None, ge=0)

    # Behavioral
    minimum_time_on_site: Optional[int] = Field(None, ge=0)  # seconds
    minimum_page_views: Optional[int] = Field(None, ge=0)

    # Alerts
    conversion_spike_alert: bool = False
    velocity_threshold: Optional[int] = Field(None, ge=0)  # conversions per velocity window

    # Technical
    cookie_tamper_detection: bool = False
    affiliate_blacklist: List[str] = Field(default_factory=list)

    @field_validator("geo_targeting", "geo_blacklist")
    @classmethod
    def normalize_countries(cls, v: List[str]) -> List[str]:
        codes = [code.strip().upper() for code in v]
        bad = [code for code in codes if len(code) != 2 or not code.isalpha()]
        if bad:
            raise ValueError(f"Invalid country codes: {bad}")
        return codes


class CommissionRule(TrackingModel):
    type: EventType
    payout: PayoutConfig
    validation_method: ValidationMethod = ValidationMethod.AUTO
    fraud_detection: FraudDetectionConfig = Field(default_factory=FraudDetectionConfig)


class OrganizationConfig(TrackingModel):
    id: str
    api_key: str
    webhook_secret: Optional[str] = None


class CampaignConfig(TrackingModel):
    id: str
    organization_id: str
    active: bool = True
    affiliate_ids: List[str] = Field(default_factory=list)
    attribution_model: Optional[AttributionModel] = None
    commission_rules: List[CommissionRule] = Field(default_factory=list)

    def rule_for(self, event_type: EventType) -> Optional[CommissionRule]:
        for rule in self.commission_rules:
            if rule.type == event_type:
                return rule
        return None
