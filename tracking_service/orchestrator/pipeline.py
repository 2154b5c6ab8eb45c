"""
Event Pipeline Orchestrator

Sequences one inbound event through:
    validate -> resolve campaign -> sanitize -> session/click correlation
    -> attribution -> fraud check -> commission -> commit -> webhook

Concurrency model:
- ``event:{org}:{eventId}`` lock: one run per event id; a completed run's
  serialized response is stored and replayed verbatim afterwards.
- ``visitor:{visitorId}`` lock: session/click reads and writes for one visitor
  are serialized, so they apply in arrival order.
- Click consumption is a compare-and-set in the store; a lost claim re-runs
  attribution without that click.

Nothing is written until the decision is made: structural errors raised
along the way leave no state behind. The decision phase runs under
PIPELINE_TIMEOUT_SECONDS; a timeout or store failure resolves the event to
``rejected`` / VALIDATION_FAILED without recording it. Click claims and
fraud history are keyed by event id, so retrying that event after a commit
failed halfway reuses its own claims instead of tripping over them.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from redis.exceptions import RedisError

from tracking_service.collectors.click_session_store import (
    ClickSessionStore,
    apply_event,
    visitor_lock_key,
)
from tracking_service.collectors.context_sanitizer import ContextSanitizer
from tracking_service.core.circuit_breaker import CircuitBreakerError
from tracking_service.core.config import Settings, get_settings
from tracking_service.core.errors import (
    DuplicateEventError,
    EventNotFoundError,
    InvalidCampaignError,
    InvalidEventError,
    InvalidOrganizationError,
    TrackingError,
)
from tracking_service.core.ids import new_id
from tracking_service.core.metrics import metrics
from tracking_service.core.signing import build_webhook
from tracking_service.core.worker_pool import AsyncWorkerPool, WorkerPoolFullError
from tracking_service.engine.attribution import attribute, resolve_model, resolve_window
from tracking_service.engine.commission import compute_payout
from tracking_service.engine.fraud import EXPIRED_CLICK, FraudEngine, FraudHistory
from tracking_service.models.commission import (
    CampaignConfig,
    CommissionRule,
    IpRestriction,
    OrganizationConfig,
)
from tracking_service.models.requests import (
    AffiliateSummary,
    TrackEventRequest,
    TrackEventResponse,
    ValidateConversionResponse,
    WebhookEvent,
    validate_conversion_request,
    validate_track_request,
)
from tracking_service.models.tracking import (
    AttributionModel,
    ClickData,
    EventContext,
    EventStatus,
    EventType,
    MetadataValue,
    SessionData,
    TrackingEvent,
)
from tracking_service.store.base import StoreLockTimeout, TrackingStore
from .directory import CampaignDirectory
from .webhooks import WebhookPublisher

logger = logging.getLogger(__name__)

NO_ATTRIBUTION = "NO_ATTRIBUTION"

# Infrastructure failures that resolve a run to VALIDATION_FAILED
STORE_FAILURES = (CircuitBreakerError, RedisError, OSError, asyncio.TimeoutError)

ACCEPTED_STATUSES = (EventStatus.VALIDATED, EventStatus.PENDING)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrackOutcome:
    """Response of one run plus the exact bytes stored for replay"""
    response: TrackEventResponse
    body: str
    replayed: bool = False


@dataclass
class _Journey:
    """Everything needed to (re)decide a conversion"""
    clicks: List[ClickData]
    out_of_window: int
    model: AttributionModel
    window: int
    rule: CommissionRule
    history: FraudHistory


@dataclass
class _Plan:
    """The decided outcome of a run, not yet written"""
    event: TrackingEvent
    session: SessionData
    conversion: bool = False
    new_click: Optional[ClickData] = None
    journey: Optional[_Journey] = None
    message: Optional[str] = None


class EventPipeline:
    """Per-event orchestration over an injected store, directory and webhook publisher."""

    def __init__(
        self,
        store: TrackingStore,
        directory: CampaignDirectory,
        webhooks: WebhookPublisher,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        worker_pool: Optional[AsyncWorkerPool] = None,
        fraud_engine: Optional[FraudEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.directory = directory
        self.webhooks = webhooks
        self.clock = clock
        self.worker_pool = worker_pool
        self.fraud = fraud_engine or FraudEngine()
        self.sanitizer = ContextSanitizer.from_settings(self.settings)
        self.clicks = ClickSessionStore(
            store,
            session_timeout_seconds=self.settings.SESSION_TIMEOUT_SECONDS,
            retention_grace_seconds=self.settings.CLICK_RETENTION_GRACE_SECONDS,
        )

    # ==================== Ingestion ====================

    async def track(
        self,
        payload: Any,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TrackOutcome:
        """
        Run one event through the pipeline.

        Args:
            payload: Raw TrackEventRequest body (camelCase dict) or a parsed request
            request_ip: Address the request came from, used when the context has none
            user_agent: User-Agent header, used when the context has none

        Raises:
            TrackingError subclasses for structural problems; business outcomes
            are returned as ``success: false`` responses instead.
        """
        if isinstance(payload, TrackEventRequest):
            payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)

        try:
            request = validate_track_request(payload)
            organization, campaign = await self.directory.resolve(
                request.organization_id, request.campaign_id, request.affiliate_id
            )
        except TrackingError as e:
            self._structural(e)
            raise

        metrics.events_received.labels(type=request.type.value).inc()
        event_id = request.event_id or new_id("event")
        result_key = f"{organization.id}:{event_id}"

        with metrics.pipeline_latency.labels(type=request.type.value).time():
            try:
                async with self.store.lock(f"event:{result_key}"):
                    stored = await self.store.get_result(result_key)
                    if stored is not None:
                        metrics.replays_served.inc()
                        logger.info(f"Replaying stored result for event {event_id}")
                        return TrackOutcome(
                            response=TrackEventResponse.model_validate_json(stored),
                            body=stored,
                            replayed=True,
                        )
                    return await self._process(
                        request, organization, campaign, event_id, result_key, request_ip, user_agent
                    )
            except TrackingError as e:
                self._structural(e)
                raise
            except STORE_FAILURES as e:
                return self._fallback(event_id, e)

    async def track_batch(
        self,
        payloads: Sequence[Any],
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Track several events; each item gets its own response or error entry.

        With a running worker pool, items are routed by visitor so one
        visitor's events run in submission order and visitors run in parallel.
        """
        limit = self.settings.BATCH_MAX_EVENTS
        if len(payloads) > limit:
            raise InvalidEventError(
                f"Batch of {len(payloads)} events exceeds the limit of {limit}",
                [{"field": "events", "message": f"at most {limit} events per batch"}],
            )

        if self.worker_pool is None or not self.worker_pool.running:
            return [
                await self._batch_item(self.track(payload, request_ip, user_agent))
                for payload in payloads
            ]

        futures = []
        for index, payload in enumerate(payloads):
            futures.append(await self._submit(payload, index, request_ip, user_agent))
        return [await self._batch_item(future) for future in futures]

    async def _submit(self, payload: Any, index: int, request_ip, user_agent) -> Awaitable:
        key = f"item-{index}"
        if isinstance(payload, dict):
            key = payload.get("visitorId") or payload.get("clickId") or key
        try:
            return await self.worker_pool.submit(str(key), self.track, payload, request_ip, user_agent)
        except WorkerPoolFullError as e:
            failed = asyncio.get_running_loop().create_future()
            failed.set_exception(e)
            return failed

    async def _batch_item(self, pending: Awaitable) -> Dict[str, Any]:
        try:
            outcome = await pending
        except TrackingError as e:
            return {"success": False, "error": e.to_dict()}
        except WorkerPoolFullError as e:
            return {"success": False, "error": {"code": "RATE_LIMIT_EXCEEDED", "message": str(e)}}
        except Exception as e:
            logger.error(f"Batch item failed: {e}", exc_info=True)
            return {"success": False, "error": {"code": "INTERNAL_ERROR", "message": "Internal error"}}
        return json.loads(outcome.body)

    async def _process(
        self,
        request: TrackEventRequest,
        organization: OrganizationConfig,
        campaign: CampaignConfig,
        event_id: str,
        result_key: str,
        request_ip: Optional[str],
        user_agent: Optional[str],
    ) -> TrackOutcome:
        existing = await self.store.get_event(event_id)
        if existing is not None and existing.organization_id != organization.id:
            raise DuplicateEventError(event_id)

        received_at = self.clock()
        context, metadata = self.sanitizer.sanitize(
            request.context, request.metadata, request_ip, user_agent, received_at
        )
        rule = campaign.rule_for(request.type) if request.type != EventType.CLICK else None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.PIPELINE_TIMEOUT_SECONDS

        visitor_id = await asyncio.wait_for(
            self.clicks.resolve_visitor(request.visitor_id, request.click_id),
            timeout=self._remaining(deadline),
        )
        async with self.store.lock(visitor_lock_key(visitor_id)):
            plan = await asyncio.wait_for(
                self._evaluate(request, campaign, rule, event_id, visitor_id, context, metadata, received_at),
                timeout=self._remaining(deadline),
            )
            return await self._commit(plan, organization, result_key)

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.0, deadline - asyncio.get_running_loop().time())

    # ==================== Decision ====================

    async def _evaluate(
        self,
        request: TrackEventRequest,
        campaign: CampaignConfig,
        rule: Optional[CommissionRule],
        event_id: str,
        visitor_id: str,
        context: EventContext,
        metadata: Dict[str, MetadataValue],
        now: datetime,
    ) -> _Plan:
        session = await self.clicks.open_session(
            visitor_id,
            request.session_id,
            now,
            ip=context.ip,
            device_fingerprint=context.device_fingerprint,
            url=context.url,
            referrer=context.referrer,
        )

        event = TrackingEvent(
            id=event_id,
            type=request.type,
            timestamp=now,
            organization_id=request.organization_id,
            campaign_id=request.campaign_id,
            affiliate_id=request.affiliate_id,
            session_id=session.id,
            click_id=request.click_id,
            visitor_id=visitor_id,
            user_id=request.user_id,
            email=request.email,
            phone=request.phone,
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency,
            custom_event_name=request.custom_event_name,
            metadata=metadata,
            context=context,
        )

        if request.type == EventType.CLICK:
            return await self._plan_click(request, event, session, now)

        if rule is None:
            event.status = EventStatus.VALIDATED
            return _Plan(event=event, session=session, message="event tracked")

        return await self._plan_conversion(request, campaign, rule, event, session, now)

    async def _plan_click(
        self,
        request: TrackEventRequest,
        event: TrackingEvent,
        session: SessionData,
        now: datetime,
    ) -> _Plan:
        duplicate = None
        if request.click_id:
            # A click id is never reopened
            duplicate = await self.clicks.get_click(request.click_id)
        if duplicate is None:
            duplicate = await self.clicks.find_duplicate_click(
                event.visitor_id,
                event.affiliate_id,
                event.campaign_id,
                now,
                self.settings.CLICK_DEDUP_WINDOW_SECONDS,
            )

        event.status = EventStatus.VALIDATED
        if duplicate is not None:
            metrics.duplicate_clicks.inc()
            event.click_id = duplicate.id
            return _Plan(event=event, session=session, message="duplicate click")

        window = resolve_window(request.conversion_window, None, self.settings.DEFAULT_CONVERSION_WINDOW_SECONDS)
        click = ClickData(
            id=request.click_id or new_id("click"),
            timestamp=now,
            affiliate_id=event.affiliate_id,
            campaign_id=event.campaign_id,
            organization_id=event.organization_id,
            session_id=session.id,
            visitor_id=event.visitor_id,
            context=event.context,
            expires_at=now + timedelta(seconds=window),
        )
        event.click_id = click.id
        return _Plan(event=event, session=session, new_click=click, message="click tracked")

    async def _plan_conversion(
        self,
        request: TrackEventRequest,
        campaign: CampaignConfig,
        rule: CommissionRule,
        event: TrackingEvent,
        session: SessionData,
        now: datetime,
    ) -> _Plan:
        config = rule.fraud_detection
        model = resolve_model(
            request.attribution_model, campaign.attribution_model, self.settings.DEFAULT_ATTRIBUTION_MODEL
        )
        window = resolve_window(
            request.conversion_window, config.conversion_window, self.settings.DEFAULT_CONVERSION_WINDOW_SECONDS
        )
        lookup = await self.clicks.resolve_touchpoints(
            event.visitor_id, now, window, campaign_id=campaign.id, conversion_id=event.id
        )

        attribution = attribute(model, lookup.eligible, now, window, self.settings.TIME_DECAY_HALF_LIFE_SECONDS)
        if attribution is None:
            return _Plan(
                event=self._unattributed(event, expired=lookup.has_expired_only),
                session=session,
                conversion=True,
            )

        history = await self._gather_history(event, attribution.attributed_affiliate_id, rule, apply_event(session, event))
        journey = _Journey(
            clicks=list(lookup.eligible),
            out_of_window=lookup.out_of_window,
            model=model,
            window=window,
            rule=rule,
            history=history,
        )
        return _Plan(event=self._decide(event, journey), session=session, conversion=True, journey=journey)

    async def _gather_history(
        self,
        event: TrackingEvent,
        payee_affiliate_id: str,
        rule: CommissionRule,
        session_view: SessionData,
    ) -> FraudHistory:
        config = rule.fraud_detection
        history = FraudHistory(session=session_view)
        history.recent_attempts = await self.store.record_attempt(
            payee_affiliate_id, event.id, event.timestamp, self.settings.VELOCITY_WINDOW_SECONDS
        )

        # A retried event must not match the history it wrote itself
        campaign_id, exclude = event.campaign_id, event.id
        if config.ip_restriction != IpRestriction.NONE:
            history.ip_last_seen = await self.store.last_seen(campaign_id, "ip", event.context.ip, exclude)
        if config.device_fingerprint_checks and event.context.device_fingerprint:
            history.fingerprint_last_seen = await self.store.last_seen(
                campaign_id, "fingerprint", event.context.device_fingerprint, exclude
            )
        if config.duplicate_email_phone_block:
            if event.email:
                history.email_last_seen = await self.store.last_seen(campaign_id, "email", event.email, exclude)
            if event.phone:
                history.phone_last_seen = await self.store.last_seen(campaign_id, "phone", event.phone, exclude)
        if config.cookie_tamper_detection and event.click_id:
            history.referenced_click = await self.clicks.get_click(event.click_id)
        return history

    def _decide(self, event: TrackingEvent, journey: _Journey) -> TrackingEvent:
        """Attribution, fraud rules and payout over the journey's clicks. Pure."""
        attribution = attribute(
            journey.model,
            journey.clicks,
            event.timestamp,
            journey.window,
            self.settings.TIME_DECAY_HALF_LIFE_SECONDS,
        )
        if attribution is None:
            # Clicks lost to other conversions are gone; only the out-of-window ones remain
            return self._unattributed(event, expired=journey.out_of_window > 0)

        candidate = event.model_copy(update={"attribution": attribution})
        result = self.fraud.evaluate(
            candidate,
            attribution,
            journey.rule.fraud_detection,
            journey.history,
            journey.rule.validation_method,
        )

        update: Dict[str, Any] = {
            "status": result.status,
            "fraud_flags": result.flags,
            "rejection_reason": result.rejection_reason,
            "payout": None,
            "payout_currency": None,
        }
        if result.status in ACCEPTED_STATUSES:
            # Raises ValidationFailedError for a misconfigured rule, even when
            # the payout itself is only attached after review
            payout, currency = compute_payout(candidate, journey.rule.payout)
            if not result.needs_review:
                update["payout"] = payout
                update["payout_currency"] = currency
        return candidate.model_copy(update=update)

    @staticmethod
    def _unattributed(event: TrackingEvent, expired: bool) -> TrackingEvent:
        if expired:
            reason, flags = EXPIRED_CLICK, [EXPIRED_CLICK]
        else:
            reason, flags = NO_ATTRIBUTION, []
        return event.model_copy(update={
            "attribution": None,
            "status": EventStatus.REJECTED,
            "rejection_reason": reason,
            "fraud_flags": flags,
            "payout": None,
            "payout_currency": None,
        })

    # ==================== Commit ====================

    async def _commit(self, plan: _Plan, organization: OrganizationConfig, result_key: str) -> TrackOutcome:
        event = plan.event
        if plan.journey is not None and event.status in ACCEPTED_STATUSES:
            event = await self._claim_journey(event, plan.journey)

        if plan.new_click is not None:
            await self.clicks.record_click(plan.new_click, event.timestamp)
        session = await self.clicks.touch(plan.session, event, plan.new_click)

        if plan.conversion and event.status in ACCEPTED_STATUSES:
            await self._record_history(event)

        await self.store.save_event(event)

        response = self._response(event, session, plan.message)
        body = response.model_dump_json(by_alias=True, exclude_none=True)
        await self.store.save_result(result_key, body)

        self._log_outcome(event)
        if plan.conversion:
            await self._emit(organization, event)
        return TrackOutcome(response=response, body=body)

    async def _claim_journey(self, event: TrackingEvent, journey: _Journey) -> TrackingEvent:
        """Claim the payee click first; if another conversion got it, decide again without it."""
        while event.attribution is not None and event.status in ACCEPTED_STATUSES:
            payee = event.attribution.attributed_click_id
            if await self.clicks.claim_conversion(payee, event):
                for touchpoint in event.attribution.touchpoints:
                    if touchpoint.click_id != payee:
                        await self.clicks.claim_conversion(touchpoint.click_id, event)
                return event

            metrics.claim_conflicts.inc()
            journey.clicks = [c for c in journey.clicks if c.id != payee]
            event = self._decide(event, journey)
        return event

    async def _record_history(self, event: TrackingEvent):
        campaign_id, at = event.campaign_id, event.timestamp
        await self.store.record_seen(campaign_id, "ip", event.context.ip, at, event.id)
        if event.context.device_fingerprint:
            await self.store.record_seen(
                campaign_id, "fingerprint", event.context.device_fingerprint, at, event.id
            )
        if event.email:
            await self.store.record_seen(campaign_id, "email", event.email, at, event.id)
        if event.phone:
            await self.store.record_seen(campaign_id, "phone", event.phone, at, event.id)

    async def _emit(self, organization: OrganizationConfig, event: TrackingEvent):
        if event.status == EventStatus.VALIDATED:
            name = WebhookEvent.CONVERSION_VALIDATED
        elif event.status == EventStatus.PENDING:
            name = WebhookEvent.CONVERSION_CREATED
        else:
            name = WebhookEvent.CONVERSION_REJECTED

        secret = organization.webhook_secret or self.settings.WEBHOOK_SECRET
        payload = build_webhook(name, event, secret, self.clock())
        try:
            await self.webhooks.publish(organization.id, payload)
        except STORE_FAILURES as e:
            # The event is already committed; delivery is retried downstream from the stored event
            logger.error(f"Failed to publish {name.value} for event {event.id}: {e}")
            return
        metrics.webhooks_published.labels(event=name.value).inc()

    # ==================== Responses ====================

    def _response(self, event: TrackingEvent, session: SessionData, message: Optional[str]) -> TrackEventResponse:
        attribution = event.attribution
        return TrackEventResponse(
            success=event.status in ACCEPTED_STATUSES,
            event_id=event.id,
            message=message or self._message(event),
            status=event.status,
            attributed=attribution is not None,
            attributed_affiliate_id=attribution.attributed_affiliate_id if attribution else None,
            validated=event.status == EventStatus.VALIDATED,
            fraud_flags=list(event.fraud_flags),
            payout=event.payout,
            payout_currency=event.payout_currency,
            click_id=event.click_id,
            session_id=session.id,
            visitor_id=event.visitor_id,
        )

    @staticmethod
    def _message(event: TrackingEvent) -> str:
        if event.status == EventStatus.VALIDATED:
            return "conversion validated" if event.attribution else "event tracked"
        if event.status == EventStatus.PENDING:
            return "conversion pending review"
        if event.status == EventStatus.FRAUD:
            return f"FRAUD_DETECTED: {', '.join(event.fraud_flags)}"
        if event.rejection_reason == EXPIRED_CLICK:
            return "EXPIRED_CLICK: no click inside the attribution window"
        if event.rejection_reason == NO_ATTRIBUTION:
            return "NO_ATTRIBUTION: no open click to attribute this conversion to"
        return f"{event.rejection_reason}: conversion failed validation"

    def _fallback(self, event_id: str, error: BaseException) -> TrackOutcome:
        timed_out = isinstance(error, asyncio.TimeoutError) and not isinstance(error, StoreLockTimeout)
        reason = "deadline" if timed_out else "store"
        metrics.pipeline_fallbacks.labels(reason=reason).inc()
        logger.error(f"Event {event_id} resolved to VALIDATION_FAILED ({reason}): {error!r}")

        response = TrackEventResponse(
            success=False,
            event_id=event_id,
            message=(
                "VALIDATION_FAILED: pipeline deadline exceeded" if timed_out
                else "VALIDATION_FAILED: tracking store unavailable"
            ),
            status=EventStatus.REJECTED,
        )
        return TrackOutcome(response=response, body=response.model_dump_json(by_alias=True, exclude_none=True))

    def _structural(self, error: TrackingError):
        metrics.structural_errors.labels(code=error.code.value).inc()
        logger.warning(f"Event aborted ({error.code.value}): {error.message}")

    def _log_outcome(self, event: TrackingEvent):
        metrics.event_outcomes.labels(type=event.type.value, status=event.status.value).inc()
        for flag in event.fraud_flags:
            metrics.fraud_flags.labels(flag=flag).inc()
        suffix = f" flags={event.fraud_flags}" if event.fraud_flags else ""
        logger.info(f"Event {event.id} ({event.type.value}) -> {event.status.value}{suffix}")

    # ==================== Review ====================

    async def validate_conversion(self, payload: Any) -> ValidateConversionResponse:
        """
        Move a pending conversion to ``validated`` (payout attached) or
        ``rejected``. Reviewing a terminal event returns its stored outcome.
        """
        try:
            request = validate_conversion_request(payload)
            organization = await self.directory.get_organization(request.organization_id)
            if organization is None:
                raise InvalidOrganizationError(request.organization_id)

            async with self.store.lock(f"event:{organization.id}:{request.event_id}"):
                event = await self.store.get_event(request.event_id)
                if event is None or event.organization_id != organization.id:
                    raise EventNotFoundError(request.event_id)
                if event.is_terminal:
                    return self._review_response(event)

                campaign = await self.directory.get_campaign(event.campaign_id)
                rule = campaign.rule_for(event.type) if campaign else None
                if rule is None:
                    raise InvalidCampaignError(event.campaign_id, reason="No commission rule for reviewed event")

                if request.approved:
                    payout, currency = compute_payout(event, rule.payout)
                    event = event.model_copy(update={
                        "status": EventStatus.VALIDATED,
                        "payout": payout,
                        "payout_currency": currency,
                    })
                else:
                    event = event.model_copy(update={
                        "status": EventStatus.REJECTED,
                        "rejection_reason": request.rejection_reason,
                    })
                await self.store.save_event(event)
        except TrackingError as e:
            self._structural(e)
            raise

        self._log_outcome(event)
        await self._emit(organization, event)
        return self._review_response(event)

    @staticmethod
    def _review_response(event: TrackingEvent) -> ValidateConversionResponse:
        return ValidateConversionResponse(
            success=True,
            event_id=event.id,
            status=event.status,
            payout=event.payout,
            payout_currency=event.payout_currency,
            rejection_reason=event.rejection_reason,
        )

    # ==================== Lookup and retention ====================

    async def get_event(self, organization_id: str, event_id: str) -> TrackingEvent:
        event = await self.store.get_event(event_id)
        if event is None or event.organization_id != organization_id:
            raise EventNotFoundError(event_id)
        return event

    async def purge_expired(self) -> Dict[str, int]:
        purged = await self.clicks.purge(self.clock())
        for kind, count in purged.items():
            if count:
                metrics.records_purged.labels(kind=kind).inc(count)
        return purged

    # ==================== Reporting ====================

    async def affiliate_summary(
        self, organization_id: str, affiliate_id: str, start: datetime, end: datetime
    ) -> AffiliateSummary:
        """Clicks of the affiliate in ``[start, end]`` and how many of them converted."""
        total, converted = await self.clicks.affiliate_click_counts(organization_id, affiliate_id, start, end)
        rate = round(converted / total * 100, 2) if total else 0.0
        return AffiliateSummary(
            organization_id=organization_id,
            affiliate_id=affiliate_id,
            start=start,
            end=end,
            total_clicks=total,
            converted_clicks=converted,
            conversion_rate=rate,
        )
