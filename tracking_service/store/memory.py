"""
In-process TrackingStore.

Used when REDIS_URL is unset and as the test double. Records are copied on
the way in and out so callers never share mutable state with the store.
"""
import asyncio
import logging
from bisect import bisect_left
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional, Tuple

from tracking_service.models.tracking import ClickData, EventType, SessionData, TrackingEvent
from .base import StoreLockTimeout, TrackingStore

logger = logging.getLogger(__name__)


class MemoryStore(TrackingStore):
    """Dict-backed store with per-key asyncio locks."""

    def __init__(self, lock_timeout: float = 10.0):
        self.lock_timeout = lock_timeout

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_waiters: Dict[str, int] = defaultdict(int)

        self._clicks: Dict[str, ClickData] = {}
        self._sessions: Dict[str, SessionData] = {}
        self._visitor_clicks: Dict[str, List[str]] = defaultdict(list)
        self._visitor_sessions: Dict[str, str] = {}
        self._events: Dict[str, TrackingEvent] = {}
        self._results: Dict[str, str] = {}
        self._seen: Dict[Tuple[str, str, str], Tuple[datetime, str]] = {}
        self._attempts: Dict[str, List[Tuple[datetime, str]]] = defaultdict(list)
        self._affiliate_clicks: Dict[Tuple[str, str], Dict[str, datetime]] = defaultdict(dict)
        self._affiliate_conversions: Dict[Tuple[str, str], Dict[str, datetime]] = defaultdict(dict)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_waiters[key] += 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
            except asyncio.TimeoutError:
                raise StoreLockTimeout(key, self.lock_timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._lock_waiters[key] -= 1
            if self._lock_waiters[key] == 0:
                del self._lock_waiters[key]
                self._locks.pop(key, None)

    # Clicks

    async def get_click(self, click_id: str) -> Optional[ClickData]:
        click = self._clicks.get(click_id)
        return click.model_copy(deep=True) if click else None

    async def save_click(self, click: ClickData, ttl_seconds: Optional[int] = None):
        # Expiry of in-process rows is handled by the retention reaper
        self._clicks[click.id] = click.model_copy(deep=True)

    async def delete_click(self, click_id: str):
        self._clicks.pop(click_id, None)

    async def claim_click(
        self,
        click_id: str,
        conversion_id: str,
        conversion_type: EventType,
        at: datetime,
    ) -> bool:
        # No await between the check and the write: atomic on the event loop
        click = self._clicks.get(click_id)
        if click is None:
            return False
        if click.converted:
            return click.conversion_id == conversion_id
        click.converted = True
        click.conversion_id = conversion_id
        click.conversion_type = conversion_type
        click.conversion_timestamp = at
        return True

    async def list_click_ids(self) -> List[str]:
        return list(self._clicks)

    # Visitor indexes

    async def append_visitor_click(self, visitor_id: str, click_id: str, ttl_seconds: Optional[int] = None):
        self._visitor_clicks[visitor_id].append(click_id)

    async def get_visitor_clicks(self, visitor_id: str) -> List[str]:
        return list(self._visitor_clicks.get(visitor_id, ()))

    async def remove_visitor_click(self, visitor_id: str, click_id: str):
        clicks = self._visitor_clicks.get(visitor_id)
        if not clicks:
            return
        if click_id in clicks:
            clicks.remove(click_id)
        if not clicks:
            del self._visitor_clicks[visitor_id]

    async def get_visitor_session(self, visitor_id: str) -> Optional[str]:
        return self._visitor_sessions.get(visitor_id)

    async def set_visitor_session(self, visitor_id: str, session_id: str):
        self._visitor_sessions[visitor_id] = session_id

    # Sessions

    async def get_session(self, session_id: str) -> Optional[SessionData]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def save_session(self, session: SessionData):
        self._sessions[session.id] = session.model_copy(deep=True)

    async def delete_session(self, session_id: str):
        session = self._sessions.pop(session_id, None)
        if session and self._visitor_sessions.get(session.visitor_id) == session_id:
            del self._visitor_sessions[session.visitor_id]

    async def list_session_ids(self) -> List[str]:
        return list(self._sessions)

    # Fraud history

    async def last_seen(
        self,
        campaign_id: str,
        kind: str,
        value: str,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[datetime]:
        entry = self._seen.get((campaign_id, kind, value))
        if entry is None or entry[1] == exclude_event_id:
            return None
        return entry[0]

    async def record_seen(self, campaign_id: str, kind: str, value: str, at: datetime, event_id: str):
        self._seen[(campaign_id, kind, value)] = (at, event_id)

    async def record_attempt(self, affiliate_id: str, attempt_id: str, at: datetime, window_seconds: int) -> int:
        attempts = self._attempts[affiliate_id]
        if all(existing_id != attempt_id for _, existing_id in attempts):
            attempts.append((at, attempt_id))
            attempts.sort(key=lambda item: item[0])

        cutoff = at - timedelta(seconds=window_seconds)
        start = bisect_left([ts for ts, _ in attempts], cutoff)
        del attempts[:start]
        return sum(1 for ts, _ in attempts if ts <= at)

    # Affiliate statistics

    async def record_affiliate_click(self, organization_id: str, affiliate_id: str, click_id: str, at: datetime):
        self._affiliate_clicks[(organization_id, affiliate_id)][click_id] = at

    async def record_affiliate_conversion(
        self, organization_id: str, affiliate_id: str, click_id: str, clicked_at: datetime
    ):
        self._affiliate_conversions[(organization_id, affiliate_id)][click_id] = clicked_at

    async def affiliate_click_counts(
        self, organization_id: str, affiliate_id: str, start: datetime, end: datetime
    ) -> Tuple[int, int]:
        key = (organization_id, affiliate_id)
        clicks = sum(1 for at in self._affiliate_clicks.get(key, {}).values() if start <= at <= end)
        converted = sum(1 for at in self._affiliate_conversions.get(key, {}).values() if start <= at <= end)
        return clicks, converted

    # Events and idempotent results

    async def get_event(self, event_id: str) -> Optional[TrackingEvent]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def save_event(self, event: TrackingEvent):
        self._events[event.id] = event.model_copy(deep=True)

    async def get_result(self, event_id: str) -> Optional[str]:
        return self._results.get(event_id)

    async def save_result(self, event_id: str, payload: str):
        self._results[event_id] = payload
