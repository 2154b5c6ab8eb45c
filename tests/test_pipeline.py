"""
End-to-end tests for the event pipeline over the in-memory store
"""
import asyncio
import json
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tracking_service.core.errors import (
    DuplicateEventError,
    EventNotFoundError,
    InvalidAffiliateError,
    InvalidCampaignError,
    InvalidEventError,
    InvalidOrganizationError,
    ValidationFailedError,
)
from tracking_service.core.signing import verify_webhook
from tracking_service.core.worker_pool import AsyncWorkerPool
from tracking_service.models import (
    EventStatus,
    FraudDetectionConfig,
    IpRestriction,
    ValidationMethod,
)
from tracking_service.orchestrator import EventPipeline, InMemoryCampaignDirectory
from tracking_service.store import MemoryStore

from tests.factories import (
    ORG_ID,
    WEBHOOK_SECRET,
    click_payload,
    make_campaign,
    make_organization,
    purchase_payload,
    purchase_rule,
    wire_context,
)


def _with_rule(directory, **rule_kwargs):
    directory.add_campaign(make_campaign(rules=[purchase_rule(**rule_kwargs)]))


@pytest.mark.asyncio
class TestClickTracking:
    """Click events open attribution windows"""

    async def test_click_opens_window(self, pipeline, store, clock):
        """A click is stored with an expiry one conversion window out"""
        outcome = await pipeline.track(click_payload())

        response = outcome.response
        assert response.success is True
        assert response.status == EventStatus.VALIDATED
        assert response.message == "click tracked"
        assert response.click_id.startswith("clk_")

        click = await store.get_click(response.click_id)
        assert click.affiliate_id == "A1"
        assert click.visitor_id == "vis_1"
        assert (click.expires_at - clock()).days == 7
        assert await store.get_visitor_clicks("vis_1") == [click.id]

    async def test_declared_window_shortens_expiry(self, pipeline, store, clock):
        """conversionWindow on the request bounds the click window"""
        outcome = await pipeline.track(click_payload(conversionWindow=3600))

        click = await store.get_click(outcome.response.click_id)
        assert (click.expires_at - clock()).total_seconds() == 3600

    async def test_duplicate_click_reuses_window(self, pipeline, store, clock):
        """A repeat click from the same visitor inside the dedup window opens nothing new"""
        first = await pipeline.track(click_payload())
        clock.advance(hours=2)
        second = await pipeline.track(click_payload())

        assert second.response.message == "duplicate click"
        assert second.response.click_id == first.response.click_id
        assert len(await store.get_visitor_clicks("vis_1")) == 1

    async def test_click_after_dedup_window_opens_new_window(self, pipeline, store, clock):
        """Past the dedup window the same affiliate gets a fresh click"""
        await pipeline.track(click_payload())
        clock.advance(hours=13)
        await pipeline.track(click_payload())

        assert len(await store.get_visitor_clicks("vis_1")) == 2

    async def test_click_generates_visitor_when_absent(self, pipeline):
        """Clicks without a visitor id get a fresh one"""
        payload = click_payload()
        del payload["visitorId"]

        outcome = await pipeline.track(payload)

        assert outcome.response.visitor_id.startswith("vis_")

    async def test_events_within_timeout_share_session(self, pipeline, clock):
        """A conversion shortly after the click lands in the click's session"""
        click = await pipeline.track(click_payload())
        clock.advance(minutes=10)
        purchase = await pipeline.track(purchase_payload())

        assert purchase.response.session_id == click.response.session_id

    async def test_idle_visitor_gets_new_session(self, pipeline, clock):
        """More than the session timeout of inactivity starts a new session"""
        click = await pipeline.track(click_payload())
        clock.advance(hours=2)
        purchase = await pipeline.track(purchase_payload())

        assert purchase.response.session_id != click.response.session_id


@pytest.mark.asyncio
class TestAttribution:
    """Conversion attribution through the pipeline"""

    async def test_percentage_payout_to_single_click(self, pipeline, store, outbox, clock):
        """10% of a 100.00 purchase pays 10.00 to the clicking affiliate"""
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload(amount=100))

        response = outcome.response
        assert response.success is True
        assert response.status == EventStatus.VALIDATED
        assert response.validated is True
        assert response.attributed is True
        assert response.attributed_affiliate_id == "A1"
        assert response.payout == Decimal("10.00")
        assert response.payout_currency == "USD"
        assert response.message == "conversion validated"

        body = json.loads(outcome.body)
        assert body["payout"] == "10.00"
        assert body["attributedAffiliateId"] == "A1"

        stored = await store.get_click(click.response.click_id)
        assert stored.converted is True
        assert stored.conversion_id == response.event_id
        assert outbox.events() == ["conversion.validated"]

    async def test_click_older_than_window_is_expired(self, pipeline, store, outbox, clock):
        """A purchase eight days after the only click is rejected as EXPIRED_CLICK"""
        click = await pipeline.track(click_payload())
        clock.advance(days=8)

        outcome = await pipeline.track(purchase_payload())

        response = outcome.response
        assert response.success is False
        assert response.status == EventStatus.REJECTED
        assert response.attributed is False
        assert response.fraud_flags == ["EXPIRED_CLICK"]
        assert response.message.startswith("EXPIRED_CLICK")
        assert (await store.get_click(click.response.click_id)).converted is False
        assert outbox.events() == ["conversion.rejected"]

    async def test_rule_window_does_not_extend_click_expiry(self, pipeline, directory, clock):
        """A click expires on its own window even when the rule allows a longer one"""
        _with_rule(directory, fraud=FraudDetectionConfig(conversion_window=2592000))
        await pipeline.track(click_payload())
        clock.advance(days=10)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.status == EventStatus.REJECTED
        assert outcome.response.message.startswith("EXPIRED_CLICK")

    async def test_visitor_without_clicks_is_unattributed(self, pipeline):
        """A conversion with no click at all is rejected with NO_ATTRIBUTION"""
        outcome = await pipeline.track(purchase_payload(visitor="vis_unknown"))

        assert outcome.response.status == EventStatus.REJECTED
        assert outcome.response.message.startswith("NO_ATTRIBUTION")
        assert outcome.response.fraud_flags == []

    @pytest.mark.parametrize("model", ["last-click", "first-click", "linear", "time-decay"])
    async def test_simultaneous_clicks_credit_first_appended(self, pipeline, clock, model):
        """Equal-timestamp clicks resolve to the earliest appended touchpoint"""
        await pipeline.track(click_payload(affiliate="A1"))
        await pipeline.track(click_payload(affiliate="A2"))
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload(attributionModel=model))

        assert outcome.response.attributed_affiliate_id == "A1"

    @pytest.mark.parametrize("model,expected", [
        ("last-click", "A2"),
        ("first-click", "A1"),
        ("linear", "A1"),
        ("time-decay", "A2"),
    ])
    async def test_model_picks_payee(self, pipeline, store, clock, model, expected):
        """Each attribution model picks its payee from an ordered journey"""
        await pipeline.track(click_payload(affiliate="A1"))
        clock.advance(hours=1)
        await pipeline.track(click_payload(affiliate="A2"))
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload(attributionModel=model))

        assert outcome.response.attributed_affiliate_id == expected
        event = await store.get_event(outcome.response.event_id)
        weights = [tp.weight for tp in event.attribution.touchpoints]
        assert [tp.affiliate_id for tp in event.attribution.touchpoints] == ["A1", "A2"]
        assert sum(weights) == pytest.approx(1.0)

    async def test_campaign_default_model_applies(self, pipeline, directory, clock):
        """Without a declared model the campaign's model is used"""
        directory.add_campaign(make_campaign(attribution_model="first-click"))
        await pipeline.track(click_payload(affiliate="A1"))
        clock.advance(hours=1)
        await pipeline.track(click_payload(affiliate="A2"))
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.attributed_affiliate_id == "A1"

    async def test_accepted_conversion_consumes_every_touchpoint(self, pipeline, store, clock):
        """All clicks of the journey are converted, not just the payee"""
        first = await pipeline.track(click_payload(affiliate="A1"))
        clock.advance(hours=1)
        second = await pipeline.track(click_payload(affiliate="A2"))
        clock.advance(hours=1)

        await pipeline.track(purchase_payload())

        assert (await store.get_click(first.response.click_id)).converted is True
        assert (await store.get_click(second.response.click_id)).converted is True

    async def test_second_conversion_finds_no_open_click(self, pipeline, clock):
        """A consumed click never credits a second conversion"""
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        await pipeline.track(purchase_payload(orderId="ord_1"))

        outcome = await pipeline.track(purchase_payload(orderId="ord_2"))

        assert outcome.response.status == EventStatus.REJECTED
        assert outcome.response.message.startswith("NO_ATTRIBUTION")

    async def test_explicit_click_id_resolves_visitor(self, pipeline, clock):
        """A conversion carrying only the click id is attributed through the click's visitor"""
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)
        payload = purchase_payload(clickId=click.response.click_id)
        del payload["visitorId"]

        outcome = await pipeline.track(payload)

        assert outcome.response.visitor_id == "vis_1"
        assert outcome.response.attributed_affiliate_id == "A1"

    async def test_other_campaigns_clicks_are_ignored(self, pipeline, directory, clock):
        """Clicks on another campaign never credit this campaign's conversion"""
        directory.add_campaign(make_campaign(campaign_id="cmp_2"))
        await pipeline.track(click_payload(campaignId="cmp_2"))
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.message.startswith("NO_ATTRIBUTION")


@pytest.mark.asyncio
class TestFraudRules:
    """Rule outcomes as seen by the caller"""

    async def test_order_below_minimum_is_rejected(self, pipeline, directory, store, clock):
        """minimumOrderValue rejects without consuming the click"""
        _with_rule(directory, fraud=FraudDetectionConfig(minimum_order_value=Decimal("50")))
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)

        low = await pipeline.track(purchase_payload(amount=20, orderId="ord_low"))

        assert low.response.status == EventStatus.REJECTED
        assert low.response.fraud_flags == ["minimumOrderValue"]
        assert low.response.message.startswith("minimumOrderValue")
        assert low.response.payout is None
        assert (await store.get_click(click.response.click_id)).converted is False

        high = await pipeline.track(purchase_payload(amount=100, orderId="ord_high"))
        assert high.response.status == EventStatus.VALIDATED
        assert high.response.payout == Decimal("10.00")

    async def test_blacklisted_affiliate_is_fraud(self, pipeline, directory, outbox, clock):
        """affiliateBlacklist marks the conversion as fraud"""
        _with_rule(directory, fraud=FraudDetectionConfig(affiliate_blacklist=["A1"]))
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.status == EventStatus.FRAUD
        assert outcome.response.fraud_flags == ["affiliateBlacklist"]
        assert outcome.response.message.startswith("FRAUD_DETECTED")
        assert outbox.events() == ["conversion.rejected"]

    async def test_conversion_too_soon_after_click(self, pipeline, directory, clock):
        """conversionDelay flags conversions faster than the configured delay"""
        _with_rule(directory, fraud=FraudDetectionConfig(conversion_delay=60))
        await pipeline.track(click_payload())
        clock.advance(seconds=10)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.status == EventStatus.FRAUD
        assert outcome.response.fraud_flags == ["too-fast"]

    async def test_repeat_email_is_blocked(self, pipeline, directory, clock):
        """duplicateEmailPhoneBlock rejects a second accepted conversion by the same email"""
        _with_rule(directory, fraud=FraudDetectionConfig(duplicate_email_phone_block=True))
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        first = await pipeline.track(purchase_payload(orderId="ord_1", email="Shopper@Example.com"))
        assert first.response.status == EventStatus.VALIDATED

        await pipeline.track(click_payload())
        clock.advance(hours=1)
        second = await pipeline.track(purchase_payload(orderId="ord_2", email="shopper@example.com"))

        assert second.response.status == EventStatus.FRAUD
        assert second.response.fraud_flags == ["duplicateEmailPhoneBlock"]

    async def test_unique_per_conversion_ip(self, pipeline, directory, clock):
        """ipRestriction blocks a second accepted conversion from the same IP"""
        _with_rule(directory, fraud=FraudDetectionConfig(ip_restriction=IpRestriction.UNIQUE_PER_CONVERSION))
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        await pipeline.track(purchase_payload(orderId="ord_1"))
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload(orderId="ord_2"))

        assert outcome.response.status == EventStatus.FRAUD
        assert "ipRestriction" in outcome.response.fraud_flags

    async def test_anonymized_ips_compare_prefixes(self, store, directory, outbox, settings, clock):
        """With ANONYMIZE_IP two shoppers in one /24 share their ipRestriction history"""
        settings.ANONYMIZE_IP = True
        pipeline = EventPipeline(store, directory, outbox, settings=settings, clock=clock)
        _with_rule(directory, fraud=FraudDetectionConfig(ip_restriction=IpRestriction.UNIQUE_PER_CONVERSION))
        for visitor, ip in (("vis_a", "203.0.113.7"), ("vis_b", "203.0.113.99")):
            await pipeline.track(click_payload(visitor=visitor, context=wire_context(ip=ip)))
        clock.advance(hours=1)

        first = await pipeline.track(purchase_payload(visitor="vis_a", context=wire_context(ip="203.0.113.7")))
        second = await pipeline.track(
            purchase_payload(visitor="vis_b", orderId="ord_2", context=wire_context(ip="203.0.113.99"))
        )

        assert first.response.status == EventStatus.VALIDATED
        assert second.response.status == EventStatus.FRAUD
        assert second.response.fraud_flags == ["ipRestriction"]

    async def test_conversion_spike_routes_to_review(self, pipeline, directory, clock):
        """Past the velocity threshold with spike alerts on, conversions wait for review"""
        _with_rule(directory, fraud=FraudDetectionConfig(velocity_threshold=1, conversion_spike_alert=True))
        await pipeline.track(click_payload(visitor="vis_a"))
        await pipeline.track(click_payload(visitor="vis_b"))
        clock.advance(hours=1)

        first = await pipeline.track(purchase_payload(visitor="vis_a", orderId="ord_a"))
        second = await pipeline.track(purchase_payload(visitor="vis_b", orderId="ord_b"))

        assert first.response.status == EventStatus.VALIDATED
        assert second.response.status == EventStatus.PENDING
        assert second.response.fraud_flags == ["conversionSpikeAlert"]
        assert second.response.payout is None

    async def test_velocity_threshold_alone_is_informational(self, pipeline, directory, clock):
        """Without spike alerts the velocity flag is recorded but the conversion validates"""
        _with_rule(directory, fraud=FraudDetectionConfig(velocity_threshold=0))
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.status == EventStatus.VALIDATED
        assert outcome.response.fraud_flags == ["velocityThreshold"]

    async def test_page_views_counted_across_session(self, pipeline, directory, clock):
        """minimumPageViews counts the session's events including the conversion"""
        _with_rule(directory, fraud=FraudDetectionConfig(minimum_page_views=3))
        await pipeline.track(click_payload())
        clock.advance(minutes=5)

        short = await pipeline.track(purchase_payload(orderId="ord_1"))
        assert short.response.fraud_flags == ["minimumPageViews"]

        clock.advance(minutes=5)
        enough = await pipeline.track(purchase_payload(orderId="ord_2"))
        assert enough.response.status == EventStatus.VALIDATED


@pytest.mark.asyncio
class TestManualReview:
    """Manual and webhook validation flows"""

    async def test_manual_conversion_waits_then_validates(self, pipeline, directory, outbox, store, clock):
        """A manual rule holds the conversion pending until approved"""
        _with_rule(directory, validation_method=ValidationMethod.MANUAL)
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())
        assert outcome.response.status == EventStatus.PENDING
        assert outcome.response.success is True
        assert outcome.response.payout is None
        assert outcome.response.message == "conversion pending review"
        assert (await store.get_click(click.response.click_id)).converted is True
        assert outbox.events() == ["conversion.created"]

        review = await pipeline.validate_conversion({
            "eventId": outcome.response.event_id,
            "organizationId": ORG_ID,
            "approved": True,
        })
        assert review.status == EventStatus.VALIDATED
        assert review.payout == Decimal("10.00")
        assert outbox.events() == ["conversion.created", "conversion.validated"]

        again = await pipeline.validate_conversion({
            "eventId": outcome.response.event_id,
            "organizationId": ORG_ID,
            "approved": False,
            "rejectionReason": "late",
        })
        assert again.status == EventStatus.VALIDATED
        assert len(outbox.sent) == 2

    async def test_manual_conversion_rejected(self, pipeline, directory, outbox, store, clock):
        """Rejecting a pending conversion records the reason"""
        _with_rule(directory, validation_method=ValidationMethod.WEBHOOK)
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        outcome = await pipeline.track(purchase_payload())

        review = await pipeline.validate_conversion({
            "eventId": outcome.response.event_id,
            "organizationId": ORG_ID,
            "approved": False,
            "rejectionReason": "order cancelled",
        })

        assert review.status == EventStatus.REJECTED
        assert review.rejection_reason == "order cancelled"
        stored = await store.get_event(outcome.response.event_id)
        assert stored.status == EventStatus.REJECTED
        assert outbox.events()[-1] == "conversion.rejected"

    async def test_manual_rule_holds_flagged_conversion(self, pipeline, directory, clock):
        """Manual review sees the flags instead of an automatic rejection"""
        _with_rule(
            directory,
            validation_method=ValidationMethod.MANUAL,
            fraud=FraudDetectionConfig(minimum_order_value=Decimal("500")),
        )
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.status == EventStatus.PENDING
        assert outcome.response.fraud_flags == ["minimumOrderValue"]

    async def test_rejection_requires_reason(self, pipeline):
        """approved=false without a reason is an invalid review"""
        with pytest.raises(InvalidEventError):
            await pipeline.validate_conversion({"eventId": "evt_1", "organizationId": ORG_ID, "approved": False})

    async def test_review_of_unknown_event(self, pipeline):
        """Reviewing an event that does not exist raises EventNotFoundError"""
        with pytest.raises(EventNotFoundError):
            await pipeline.validate_conversion({"eventId": "evt_missing", "organizationId": ORG_ID, "approved": True})


@pytest.mark.asyncio
class TestIdempotency:
    """Replays and concurrent conversions"""

    async def test_replay_returns_identical_body(self, pipeline, store, outbox, clock):
        """Re-sending an event id returns the stored response byte for byte"""
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        first = await pipeline.track(purchase_payload(eventId="evt_fixed"))
        stored = await store.get_event("evt_fixed")

        clock.advance(hours=1)
        second = await pipeline.track(purchase_payload(eventId="evt_fixed"))

        assert second.replayed is True
        assert second.body == first.body
        assert await store.get_event("evt_fixed") == stored
        assert len(outbox.sent) == 1

    async def test_concurrent_conversions_credit_click_once(self, pipeline, clock):
        """Of N simultaneous conversions against one click exactly one is credited"""
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcomes = await asyncio.gather(*[
            pipeline.track(purchase_payload(orderId=f"ord_{i}")) for i in range(5)
        ])

        statuses = [o.response.status for o in outcomes]
        assert statuses.count(EventStatus.VALIDATED) == 1
        assert statuses.count(EventStatus.REJECTED) == 4

    async def test_concurrent_replays_run_once(self, pipeline, outbox, clock):
        """Simultaneous submissions of one event id produce one run"""
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcomes = await asyncio.gather(*[
            pipeline.track(purchase_payload(eventId="evt_same")) for _ in range(3)
        ])

        assert len({o.body for o in outcomes}) == 1
        assert sum(1 for o in outcomes if not o.replayed) == 1
        assert len(outbox.sent) == 1

    async def test_event_id_of_another_organization(self, pipeline, directory):
        """Reusing another organization's event id is refused"""
        directory.add_organization(make_organization("org_2", api_key="key_2"))
        directory.add_campaign(make_campaign(campaign_id="cmp_2", organization_id="org_2"))
        signup = {"type": "signup", "campaignId": "cmp_2", "organizationId": "org_2"}

        await pipeline.track(click_payload(eventId="evt_shared"))

        with pytest.raises(DuplicateEventError):
            await pipeline.track(click_payload(eventId="evt_shared", **signup))


@pytest.mark.asyncio
class TestStructuralErrors:
    """Structural problems raise and leave no state behind"""

    async def test_purchase_without_amount(self, pipeline, store):
        """Every missing purchase field is reported"""
        payload = purchase_payload()
        del payload["amount"]
        del payload["orderId"]

        with pytest.raises(InvalidEventError) as exc_info:
            await pipeline.track(payload)

        fields = {v["field"] for v in exc_info.value.violations}
        assert {"amount", "orderId"} <= fields
        assert store._events == {}

    async def test_unknown_organization(self, pipeline):
        with pytest.raises(InvalidOrganizationError):
            await pipeline.track(click_payload(organizationId="org_nope"))

    async def test_unknown_campaign(self, pipeline):
        with pytest.raises(InvalidCampaignError):
            await pipeline.track(click_payload(campaignId="cmp_nope"))

    async def test_inactive_campaign(self, pipeline, directory):
        directory.add_campaign(make_campaign(active=False))
        with pytest.raises(InvalidCampaignError):
            await pipeline.track(click_payload())

    async def test_affiliate_not_enrolled(self, pipeline):
        with pytest.raises(InvalidAffiliateError):
            await pipeline.track(click_payload(affiliate="A9"))

    async def test_bad_context(self, pipeline, store):
        """Context violations are reported together"""
        payload = click_payload(context={"url": "javascript:alert(1)", "ip": "999.1.1.1"})

        with pytest.raises(InvalidEventError) as exc_info:
            await pipeline.track(payload)

        fields = {v["field"] for v in exc_info.value.violations}
        assert {"context.url", "context.ip", "context.userAgent"} <= fields
        assert await store.get_visitor_clicks("vis_1") == []

    async def test_request_headers_complete_context(self, pipeline, store):
        """Request IP and user agent fill in a missing context"""
        payload = click_payload(context={"url": "https://shop.example/"})

        outcome = await pipeline.track(payload, request_ip="198.51.100.4", user_agent="curl/8.0")

        click = await store.get_click(outcome.response.click_id)
        assert click.context.ip == "198.51.100.4"
        assert click.context.user_agent == "curl/8.0"

    async def test_percentage_rule_without_base(self, pipeline, directory, store, clock):
        """A percentage rule whose base field is missing fails the event and commits nothing"""
        _with_rule(directory, base_field="orderTotal")
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)

        with pytest.raises(ValidationFailedError):
            await pipeline.track(purchase_payload(eventId="evt_cfg"))

        assert (await store.get_click(click.response.click_id)).converted is False
        assert await store.get_event("evt_cfg") is None
        assert await store.get_result(f"{ORG_ID}:evt_cfg") is None

    async def test_percentage_of_metadata_field(self, pipeline, directory, clock):
        """baseField takes the percentage of a metadata value"""
        _with_rule(directory, base_field="orderTotal")
        await pipeline.track(click_payload())
        clock.advance(hours=1)

        outcome = await pipeline.track(purchase_payload(metadata={"orderTotal": 250}))

        assert outcome.response.payout == Decimal("25.00")


class SlowStore(MemoryStore):
    async def get_visitor_clicks(self, visitor_id):
        await asyncio.sleep(0.5)
        return await super().get_visitor_clicks(visitor_id)


class BrokenStore(MemoryStore):
    async def get_result(self, event_id):
        raise RedisConnectionError("connection refused")


class FlakyStore(MemoryStore):
    """Fails the first save of one event, after its claims and history are written"""

    def __init__(self, failing_event_id: str):
        super().__init__(lock_timeout=1.0)
        self.failing_event_id = failing_event_id

    async def save_event(self, event):
        if event.id == self.failing_event_id:
            self.failing_event_id = None
            raise RedisConnectionError("connection reset")
        await super().save_event(event)


@pytest.mark.asyncio
class TestFallbacks:
    """Deadline and store failures resolve to VALIDATION_FAILED"""

    async def test_deadline_exceeded(self, directory, outbox, settings, clock):
        """A run past the deadline is rejected and nothing is stored"""
        settings.PIPELINE_TIMEOUT_SECONDS = 0.05
        store = SlowStore()
        pipeline = EventPipeline(store, directory, outbox, settings=settings, clock=clock)

        outcome = await pipeline.track(purchase_payload(eventId="evt_slow"))

        assert outcome.response.success is False
        assert outcome.response.status == EventStatus.REJECTED
        assert outcome.response.message.startswith("VALIDATION_FAILED")
        assert await store.get_event("evt_slow") is None
        assert await store.get_result(f"{ORG_ID}:evt_slow") is None
        assert outbox.sent == []

    async def test_store_failure(self, directory, outbox, settings, clock):
        """A store error resolves the event instead of raising"""
        pipeline = EventPipeline(BrokenStore(), directory, outbox, settings=settings, clock=clock)

        outcome = await pipeline.track(purchase_payload())

        assert outcome.response.success is False
        assert outcome.response.message == "VALIDATION_FAILED: tracking store unavailable"

    async def test_retry_after_partial_commit(self, directory, outbox, settings, clock):
        """A retried event reuses the claims and history its failed run left behind"""
        _with_rule(
            directory,
            fraud=FraudDetectionConfig(
                ip_restriction=IpRestriction.UNIQUE_PER_CONVERSION,
                duplicate_email_phone_block=True,
            ),
        )
        store = FlakyStore("evt_retry")
        pipeline = EventPipeline(store, directory, outbox, settings=settings, clock=clock)
        click = await pipeline.track(click_payload())
        clock.advance(hours=1)

        failed = await pipeline.track(purchase_payload(eventId="evt_retry", email="shopper@example.com"))
        assert failed.response.message == "VALIDATION_FAILED: tracking store unavailable"
        assert (await store.get_click(click.response.click_id)).conversion_id == "evt_retry"

        retried = await pipeline.track(purchase_payload(eventId="evt_retry", email="shopper@example.com"))

        assert retried.response.status == EventStatus.VALIDATED
        assert retried.response.attributed_affiliate_id == "A1"
        assert retried.response.fraud_flags == []
        assert (await store.get_event("evt_retry")).status == EventStatus.VALIDATED

        clock.advance(minutes=5)
        other = await pipeline.track(purchase_payload(eventId="evt_other", orderId="ord_2"))
        assert other.response.status == EventStatus.REJECTED
        assert other.response.message.startswith("NO_ATTRIBUTION")


@pytest.mark.asyncio
class TestOtherEvents:

    async def test_event_without_rule_is_tracked(self, pipeline, outbox):
        """Events with no commission rule only update the session"""
        outcome = await pipeline.track(click_payload(type="signup"))

        assert outcome.response.status == EventStatus.VALIDATED
        assert outcome.response.message == "event tracked"
        assert outcome.response.attributed is False
        assert outbox.sent == []

    async def test_webhook_is_signed(self, pipeline, outbox, clock):
        """Published payloads verify with the organization's secret"""
        await pipeline.track(click_payload())
        clock.advance(hours=1)
        await pipeline.track(purchase_payload())

        _, payload = outbox.sent[0]
        body = json.loads(payload.model_dump_json(by_alias=True, exclude_none=True))
        assert verify_webhook(body, WEBHOOK_SECRET) is True
        assert body["data"]["attribution"]["attributedAffiliateId"] == "A1"
        assert verify_webhook(body, "wrong-secret") is False

    async def test_get_event_scoped_to_organization(self, pipeline):
        outcome = await pipeline.track(click_payload())

        event = await pipeline.get_event(ORG_ID, outcome.response.event_id)
        assert event.type.value == "click"
        with pytest.raises(EventNotFoundError):
            await pipeline.get_event("org_2", outcome.response.event_id)


@pytest.mark.asyncio
class TestBatch:
    """Batch ingestion"""

    async def test_items_fail_independently(self, pipeline, clock):
        """An invalid item reports its error while the others succeed"""
        results = await pipeline.track_batch([
            click_payload(),
            {"type": "purchase", "organizationId": ORG_ID},
            purchase_payload(),
        ])

        assert results[0]["success"] is True
        assert results[1]["success"] is False
        assert results[1]["error"]["code"] == "INVALID_EVENT"
        assert results[2]["attributedAffiliateId"] == "A1"

    async def test_batch_through_worker_pool(self, pipeline):
        """Items routed through the pool keep per-visitor order"""
        pool = AsyncWorkerPool(num_workers=2, queue_size=10)
        await pool.start()
        pipeline.worker_pool = pool
        try:
            results = await pipeline.track_batch([
                click_payload(visitor="vis_a"),
                click_payload(visitor="vis_b", affiliate="A2"),
                purchase_payload(visitor="vis_a", orderId="ord_a"),
                purchase_payload(visitor="vis_b", orderId="ord_b"),
            ])
        finally:
            await pool.stop()

        assert [r["success"] for r in results] == [True, True, True, True]
        assert results[2]["attributedAffiliateId"] == "A1"
        assert results[3]["attributedAffiliateId"] == "A2"

    async def test_batch_over_limit(self, pipeline, settings):
        settings.BATCH_MAX_EVENTS = 2
        with pytest.raises(InvalidEventError):
            await pipeline.track_batch([click_payload()] * 3)


@pytest.mark.asyncio
class TestRetention:

    async def test_purge_drops_expired_clicks_and_idle_sessions(self, pipeline, store, clock):
        """Clicks past expiry plus grace go, along with their idle session"""
        click = await pipeline.track(click_payload())
        clock.advance(days=9)

        purged = await pipeline.purge_expired()

        assert purged == {"clicks": 1, "sessions": 1}
        assert await store.get_click(click.response.click_id) is None
        assert await store.get_visitor_clicks("vis_1") == []

    async def test_purge_keeps_open_windows(self, pipeline, store, clock):
        """An idle session that still owns an open click is kept"""
        click = await pipeline.track(click_payload())
        clock.advance(days=1)

        purged = await pipeline.purge_expired()

        assert purged == {"clicks": 0, "sessions": 0}
        assert await store.get_click(click.response.click_id) is not None
