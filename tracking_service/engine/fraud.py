"""
Fraud & Validation Engine
Evaluates a campaign's FraudDetectionConfig against one conversion.

The engine never raises for suspicious input: every failed rule appends its
name to ``flags``. History (IP/fingerprint/email/phone reuse, velocity, the
session and any explicitly referenced click) is gathered by the orchestrator
and passed in, so evaluation is a pure function.
"""
import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from tracking_service.models.commission import FraudDetectionConfig, IpRestriction
from tracking_service.models.tracking import (
    AttributionData,
    ClickData,
    EventStatus,
    EventType,
    SessionData,
    TrackingEvent,
    ValidationMethod,
)

logger = logging.getLogger(__name__)

# Flag names
AFFILIATE_BLACKLIST = "affiliateBlacklist"
TOO_FAST = "too-fast"
EXPIRED_CLICK = "EXPIRED_CLICK"
IP_RESTRICTION = "ipRestriction"
DEVICE_FINGERPRINT = "deviceFingerprintChecks"
DUPLICATE_EMAIL_PHONE = "duplicateEmailPhoneBlock"
GEO_TARGETING = "geoTargeting"
GEO_BLACKLIST = "geoBlacklist"
MINIMUM_ORDER_VALUE = "minimumOrderValue"
MAXIMUM_ORDER_VALUE = "maximumOrderValue"
MINIMUM_TIME_ON_SITE = "minimumTimeOnSite"
MINIMUM_PAGE_VIEWS = "minimumPageViews"
VELOCITY_THRESHOLD = "velocityThreshold"
CONVERSION_SPIKE = "conversionSpikeAlert"
PROXY_VPN = "proxyVpnDetection"
COOKIE_TAMPER = "cookieTamperDetection"

# Abuse signals: the conversion is recorded as ``fraud``
FRAUD_FLAGS = frozenset({
    AFFILIATE_BLACKLIST, TOO_FAST, IP_RESTRICTION, DEVICE_FINGERPRINT,
    DUPLICATE_EMAIL_PHONE, PROXY_VPN, COOKIE_TAMPER,
})

# Eligibility failures: the conversion is ``rejected``
REJECT_FLAGS = frozenset({
    EXPIRED_CLICK, GEO_TARGETING, GEO_BLACKLIST, MINIMUM_ORDER_VALUE,
    MAXIMUM_ORDER_VALUE, MINIMUM_TIME_ON_SITE, MINIMUM_PAGE_VIEWS,
})

# Recorded on the event but never reject on their own
INFORMATIONAL_FLAGS = frozenset({VELOCITY_THRESHOLD, CONVERSION_SPIKE})

UNIQUE_PER_DAY = timedelta(hours=24)


@dataclass
class FraudHistory:
    """Everything the rules need beyond the event itself"""
    ip_last_seen: Optional[datetime] = None
    fingerprint_last_seen: Optional[datetime] = None
    email_last_seen: Optional[datetime] = None
    phone_last_seen: Optional[datetime] = None
    recent_attempts: int = 0
    session: Optional[SessionData] = None
    referenced_click: Optional[ClickData] = None


@dataclass
class FraudCheckResult:
    accepted: bool
    flags: List[str] = field(default_factory=list)
    status: EventStatus = EventStatus.VALIDATED
    rejection_reason: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return self.status == EventStatus.PENDING


def is_suspicious_ip(ip: str) -> bool:
    """Addresses a real shopper's browser should never arrive from."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
        or addr.is_unspecified
    )


class FraudEngine:
    """Rule evaluation for conversion events"""

    def evaluate(
        self,
        event: TrackingEvent,
        attribution: AttributionData,
        config: FraudDetectionConfig,
        history: FraudHistory,
        validation_method: ValidationMethod = ValidationMethod.AUTO,
    ) -> FraudCheckResult:
        """
        Run every enabled rule and decide the status.

        Manual and webhook validation always end ``pending`` so a reviewer
        sees the flags; ``auto`` applies them directly.
        """
        flags = self._collect_flags(event, attribution, config, history)

        rejecting = [f for f in flags if f not in INFORMATIONAL_FLAGS]
        accepted = not rejecting

        if validation_method in (ValidationMethod.MANUAL, ValidationMethod.WEBHOOK):
            status = EventStatus.PENDING
            reason = None
        elif any(f in FRAUD_FLAGS for f in rejecting):
            status = EventStatus.FRAUD
            reason = "FRAUD_DETECTED"
        elif rejecting:
            status = EventStatus.REJECTED
            reason = rejecting[0]
        elif CONVERSION_SPIKE in flags:
            status = EventStatus.PENDING
            reason = None
        else:
            status = EventStatus.VALIDATED
            reason = None

        if flags:
            logger.info(f"Event {event.id} flagged {flags} -> {status.value}")

        return FraudCheckResult(accepted=accepted, flags=flags, status=status, rejection_reason=reason)

    def _collect_flags(
        self,
        event: TrackingEvent,
        attribution: AttributionData,
        config: FraudDetectionConfig,
        history: FraudHistory,
    ) -> List[str]:
        # Blacklisted affiliates are rejected before anything else is looked at
        blacklist = set(config.affiliate_blacklist)
        if event.affiliate_id in blacklist or attribution.attributed_affiliate_id in blacklist:
            return [AFFILIATE_BLACKLIST]

        flags: List[str] = []
        now = event.timestamp

        payee_click = next(
            (tp for tp in attribution.touchpoints if tp.click_id == attribution.attributed_click_id),
            None,
        )
        if config.conversion_delay and payee_click is not None:
            elapsed = (now - payee_click.timestamp).total_seconds()
            if elapsed < config.conversion_delay:
                flags.append(TOO_FAST)

        if config.conversion_window and attribution.touchpoints:
            earliest = min(tp.timestamp for tp in attribution.touchpoints)
            if (now - earliest).total_seconds() > config.conversion_window:
                flags.append(EXPIRED_CLICK)

        if self._ip_reused(config.ip_restriction, history.ip_last_seen, now):
            flags.append(IP_RESTRICTION)

        if config.device_fingerprint_checks and history.fingerprint_last_seen is not None:
            flags.append(DEVICE_FINGERPRINT)

        if config.duplicate_email_phone_block and (
            history.email_last_seen is not None or history.phone_last_seen is not None
        ):
            flags.append(DUPLICATE_EMAIL_PHONE)

        country = event.context.country
        if config.geo_blacklist and country in config.geo_blacklist:
            flags.append(GEO_BLACKLIST)
        elif config.geo_targeting and country not in config.geo_targeting:
            flags.append(GEO_TARGETING)

        if event.type == EventType.PURCHASE and event.amount is not None:
            if config.minimum_order_value is not None and event.amount < config.minimum_order_value:
                flags.append(MINIMUM_ORDER_VALUE)
            if config.maximum_order_value is not None and event.amount > config.maximum_order_value:
                flags.append(MAXIMUM_ORDER_VALUE)

        session = history.session
        if config.minimum_time_on_site:
            if session is None or session.duration_seconds < config.minimum_time_on_site:
                flags.append(MINIMUM_TIME_ON_SITE)
        if config.minimum_page_views:
            if session is None or session.page_views < config.minimum_page_views:
                flags.append(MINIMUM_PAGE_VIEWS)

        if config.velocity_threshold is not None and history.recent_attempts > config.velocity_threshold:
            flags.append(CONVERSION_SPIKE if config.conversion_spike_alert else VELOCITY_THRESHOLD)

        if config.proxy_vpn_detection and is_suspicious_ip(event.context.ip):
            flags.append(PROXY_VPN)

        if config.cookie_tamper_detection and self._cookie_tampered(event, history.referenced_click):
            flags.append(COOKIE_TAMPER)

        return flags

    @staticmethod
    def _ip_reused(restriction: IpRestriction, last_seen: Optional[datetime], now: datetime) -> bool:
        if restriction == IpRestriction.NONE or last_seen is None:
            return False
        if restriction == IpRestriction.UNIQUE_PER_DAY:
            return now - last_seen < UNIQUE_PER_DAY
        return True

    @staticmethod
    def _cookie_tampered(event: TrackingEvent, click: Optional[ClickData]) -> bool:
        """An explicit click id must point at a click made by the same browser."""
        if not event.click_id:
            return False
        if click is None:
            return True
        if event.visitor_id and click.visitor_id != event.visitor_id:
            return True
        if click.context.user_agent != event.context.user_agent:
            return True
        click_fp = click.context.device_fingerprint
        event_fp = event.context.device_fingerprint
        return bool(click_fp and event_fp and click_fp != event_fp)
