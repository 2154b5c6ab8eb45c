"""
Click/Session Store
Bookkeeping for open click windows and visitor sessions on top of a TrackingStore
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from tracking_service.core.ids import new_id
from tracking_service.models.tracking import ClickData, ClickState, SessionData, TrackingEvent
from tracking_service.store.base import TrackingStore

logger = logging.getLogger(__name__)


def visitor_lock_key(visitor_id: str) -> str:
    return f"visitor:{visitor_id}"


def apply_event(session: SessionData, event: TrackingEvent, click: Optional[ClickData] = None) -> SessionData:
    """
    Return a copy of ``session`` with ``event`` (and the click it opened) folded in.

    Applying the same event twice yields the same session.
    """
    updated = session.model_copy(deep=True)
    if event.id not in updated.events:
        updated.events.append(event.id)
        updated.page_views += 1
    if event.timestamp > updated.last_activity_time:
        updated.last_activity_time = event.timestamp

    if click is not None and click.id not in updated.all_click_ids:
        updated.all_click_ids.append(click.id)
        if updated.first_click_id is None:
            updated.first_click_id = click.id
        updated.last_click_id = click.id
    return updated


@dataclass
class TouchpointLookup:
    """Clicks eligible for attribution, plus how many were excluded by time"""
    eligible: List[ClickData] = field(default_factory=list)
    out_of_window: int = 0

    @property
    def has_expired_only(self) -> bool:
        return not self.eligible and self.out_of_window > 0


class ClickSessionStore:
    """
    Owns ClickData and SessionData.

    Callers hold the visitor lock (``visitor_lock_key``) around any sequence of
    reads and writes for one visitor; ``claim_conversion`` is atomic on its own.
    """

    def __init__(
        self,
        store: TrackingStore,
        session_timeout_seconds: int = 1800,
        retention_grace_seconds: int = 86400,
    ):
        self.store = store
        self.session_timeout = timedelta(seconds=session_timeout_seconds)
        self.retention_grace = timedelta(seconds=retention_grace_seconds)

    async def resolve_visitor(self, visitor_id: Optional[str], click_id: Optional[str]) -> str:
        """Explicit visitor id, else the visitor of an explicit click, else a fresh one."""
        if visitor_id:
            return visitor_id
        if click_id:
            click = await self.store.get_click(click_id)
            if click is not None:
                return click.visitor_id
        return new_id("visitor")

    async def open_session(
        self,
        visitor_id: str,
        session_hint: Optional[str],
        now: datetime,
        ip: str,
        device_fingerprint: Optional[str] = None,
        url: Optional[str] = None,
        referrer: Optional[str] = None,
    ) -> SessionData:
        """
        Session for the next event of ``visitor_id``. Not persisted until ``touch``.

        A hinted session is reused when it belongs to the visitor; otherwise the
        visitor's current session is reused while it has been active within
        the session timeout.
        """
        if session_hint:
            session = await self.store.get_session(session_hint)
            if session is not None and session.visitor_id == visitor_id:
                return session
            if session is None:
                return self._new_session(session_hint, visitor_id, now, ip, device_fingerprint, url, referrer)

        current_id = await self.store.get_visitor_session(visitor_id)
        if current_id:
            session = await self.store.get_session(current_id)
            if session is not None and now - session.last_activity_time <= self.session_timeout:
                return session

        return self._new_session(new_id("session"), visitor_id, now, ip, device_fingerprint, url, referrer)

    @staticmethod
    def _new_session(session_id, visitor_id, now, ip, device_fingerprint, url, referrer) -> SessionData:
        return SessionData(
            id=session_id,
            visitor_id=visitor_id,
            start_time=now,
            last_activity_time=now,
            initial_url=url,
            initial_referrer=referrer,
            device_fingerprint=device_fingerprint,
            ip=ip,
        )

    async def touch(
        self,
        session: SessionData,
        event: TrackingEvent,
        click: Optional[ClickData] = None,
    ) -> SessionData:
        """Fold one event into the session and persist it."""
        updated = apply_event(session, event, click)
        await self.store.save_session(updated)
        await self.store.set_visitor_session(updated.visitor_id, updated.id)
        return updated

    async def record_click(self, click: ClickData, now: datetime):
        """Persist a new click window and index it under its visitor and affiliate."""
        ttl = int((click.expires_at + self.retention_grace - now).total_seconds())
        await self.store.save_click(click, ttl_seconds=ttl)
        await self.store.append_visitor_click(click.visitor_id, click.id, ttl_seconds=ttl)
        await self.store.record_affiliate_click(click.organization_id, click.affiliate_id, click.id, click.timestamp)

    async def get_click(self, click_id: str) -> Optional[ClickData]:
        return await self.store.get_click(click_id)

    async def _visitor_clicks(self, visitor_id: str) -> List[ClickData]:
        """Clicks of the visitor in append order; ids whose click is gone are dropped from the index."""
        found = []
        for click_id in await self.store.get_visitor_clicks(visitor_id):
            click = await self.store.get_click(click_id)
            if click is None:
                await self.store.remove_visitor_click(visitor_id, click_id)
                continue
            found.append(click)
        return found

    async def find_duplicate_click(
        self,
        visitor_id: str,
        affiliate_id: str,
        campaign_id: str,
        now: datetime,
        dedup_window_seconds: int,
    ) -> Optional[ClickData]:
        """Most recent open click for the same affiliate/campaign inside the dedup window."""
        window = timedelta(seconds=dedup_window_seconds)
        for click in reversed(await self._visitor_clicks(visitor_id)):
            if click.affiliate_id != affiliate_id or click.campaign_id != campaign_id:
                continue
            if click.state_at(now) == ClickState.OPEN and now - click.timestamp <= window:
                return click
        return None

    async def resolve_touchpoints(
        self,
        visitor_id: str,
        now: datetime,
        window_seconds: int,
        campaign_id: Optional[str] = None,
        conversion_id: Optional[str] = None,
    ) -> TouchpointLookup:
        """
        Open, unexpired clicks of the visitor (for one campaign when given)
        within ``window_seconds`` of ``now``.

        Clicks already claimed by ``conversion_id`` count as open, so a
        conversion retried after a partial write sees the same touchpoints.
        Order is the append order of the visitor's click index.
        """
        window = timedelta(seconds=window_seconds)
        lookup = TouchpointLookup()
        for click in await self._visitor_clicks(visitor_id):
            if campaign_id is not None and click.campaign_id != campaign_id:
                continue
            state = click.state_at(now)
            if state == ClickState.CONVERTED:
                if conversion_id is None or click.conversion_id != conversion_id:
                    continue
                state = ClickState.EXPIRED if now > click.expires_at else ClickState.OPEN
            if state == ClickState.EXPIRED or now - click.timestamp > window or click.timestamp > now:
                lookup.out_of_window += 1
                continue
            lookup.eligible.append(click)
        return lookup

    async def claim_conversion(self, click_id: str, event: TrackingEvent) -> bool:
        """
        First conversion wins; later attempts observe ``converted`` and get False.

        Claiming again with the same event id succeeds without changing the click.
        """
        claimed = await self.store.claim_click(click_id, event.id, event.type, event.timestamp)
        if not claimed:
            logger.info(f"Click {click_id} already converted, claim by {event.id} lost")
            return False
        click = await self.store.get_click(click_id)
        if click is not None:
            await self.store.record_affiliate_conversion(
                click.organization_id, click.affiliate_id, click.id, click.timestamp
            )
        return True

    async def affiliate_click_counts(
        self, organization_id: str, affiliate_id: str, start: datetime, end: datetime
    ) -> Tuple[int, int]:
        """(clicks, converted clicks) of an affiliate whose click time falls in ``[start, end]``"""
        return await self.store.affiliate_click_counts(organization_id, affiliate_id, start, end)

    async def purge(self, now: datetime) -> Dict[str, int]:
        """
        Delete clicks past expiry plus the retention grace, and idle sessions
        that own no unexpired click.
        """
        purged = {"clicks": 0, "sessions": 0}

        for click_id in await self.store.list_click_ids():
            click = await self.store.get_click(click_id)
            if click is None or click.expires_at + self.retention_grace >= now:
                continue
            async with self.store.lock(visitor_lock_key(click.visitor_id)):
                await self.store.delete_click(click_id)
                await self.store.remove_visitor_click(click.visitor_id, click_id)
            purged["clicks"] += 1

        for session_id in await self.store.list_session_ids():
            session = await self.store.get_session(session_id)
            if session is None or now - session.last_activity_time <= self.session_timeout:
                continue
            async with self.store.lock(visitor_lock_key(session.visitor_id)):
                if await self._owns_unexpired_click(session, now):
                    continue
                await self.store.delete_session(session_id)
            purged["sessions"] += 1

        if purged["clicks"] or purged["sessions"]:
            logger.info(f"Purged {purged['clicks']} clicks and {purged['sessions']} sessions")
        return purged

    async def _owns_unexpired_click(self, session: SessionData, now: datetime) -> bool:
        for click_id in session.all_click_ids:
            click = await self.store.get_click(click_id)
            if click is not None and now <= click.expires_at:
                return True
        return False
