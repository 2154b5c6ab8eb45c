"""
Storage contract for the tracking core.

The store is the only mutable shared resource. Callers serialize mutations of
a key through ``lock(key)``; ``claim_click`` is additionally an atomic
compare-and-set on ``converted`` so that a click is credited at most once even
across processes.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional, Tuple

from tracking_service.models.tracking import ClickData, EventType, SessionData, TrackingEvent


class StoreLockTimeout(TimeoutError):
    """A per-key lock could not be acquired in time"""

    def __init__(self, key: str, timeout: float):
        self.key = key
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key}")


class TrackingStore(ABC):
    """Async storage backend for clicks, sessions, events and fraud history."""

    @abstractmethod
    def lock(self, key: str) -> AsyncContextManager[None]:
        """Serialize work on ``key``; raises StoreLockTimeout when contended too long."""

    async def connect(self):
        """Open backend connections (no-op for in-process stores)."""

    async def disconnect(self):
        """Release backend connections (no-op for in-process stores)."""

    async def ping(self) -> bool:
        return True

    # Clicks

    @abstractmethod
    async def get_click(self, click_id: str) -> Optional[ClickData]:
        ...

    @abstractmethod
    async def save_click(self, click: ClickData, ttl_seconds: Optional[int] = None):
        ...

    @abstractmethod
    async def delete_click(self, click_id: str):
        ...

    @abstractmethod
    async def claim_click(
        self,
        click_id: str,
        conversion_id: str,
        conversion_type: EventType,
        at: datetime,
    ) -> bool:
        """
        Atomically flip ``converted`` false -> true.

        Returns True when this call converted the click, or when the click is
        already converted by the same ``conversion_id`` (an interrupted run
        being retried). False when missing or taken by another conversion.
        """

    @abstractmethod
    async def list_click_ids(self) -> List[str]:
        ...

    # Visitor indexes

    @abstractmethod
    async def append_visitor_click(self, visitor_id: str, click_id: str, ttl_seconds: Optional[int] = None):
        """Append to the visitor's click index; ``ttl_seconds`` extends (never shortens) its lifetime."""

    @abstractmethod
    async def get_visitor_clicks(self, visitor_id: str) -> List[str]:
        """Click ids for the visitor in append order."""

    @abstractmethod
    async def remove_visitor_click(self, visitor_id: str, click_id: str):
        ...

    @abstractmethod
    async def get_visitor_session(self, visitor_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_visitor_session(self, visitor_id: str, session_id: str):
        ...

    # Sessions

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionData]:
        ...

    @abstractmethod
    async def save_session(self, session: SessionData):
        ...

    @abstractmethod
    async def delete_session(self, session_id: str):
        ...

    @abstractmethod
    async def list_session_ids(self) -> List[str]:
        ...

    # Fraud history

    @abstractmethod
    async def last_seen(
        self,
        campaign_id: str,
        kind: str,
        value: str,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[datetime]:
        """
        When ``value`` of ``kind`` last produced an accepted conversion for the
        campaign. An entry written by ``exclude_event_id`` itself is ignored.
        """

    @abstractmethod
    async def record_seen(self, campaign_id: str, kind: str, value: str, at: datetime, event_id: str):
        ...

    @abstractmethod
    async def record_attempt(self, affiliate_id: str, attempt_id: str, at: datetime, window_seconds: int) -> int:
        """Record a conversion attempt and return the attempts within the trailing window."""

    # Affiliate statistics

    @abstractmethod
    async def record_affiliate_click(self, organization_id: str, affiliate_id: str, click_id: str, at: datetime):
        """Index a click by the time it was made."""

    @abstractmethod
    async def record_affiliate_conversion(
        self, organization_id: str, affiliate_id: str, click_id: str, clicked_at: datetime
    ):
        """Mark an indexed click as converted; repeating it is harmless."""

    @abstractmethod
    async def affiliate_click_counts(
        self, organization_id: str, affiliate_id: str, start: datetime, end: datetime
    ) -> Tuple[int, int]:
        """(clicks, converted clicks) made by the affiliate in ``[start, end]``."""

    # Events and idempotent results

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[TrackingEvent]:
        ...

    @abstractmethod
    async def save_event(self, event: TrackingEvent):
        ...

    @abstractmethod
    async def get_result(self, event_id: str) -> Optional[str]:
        """Serialized response of a completed run, replayed verbatim."""

    @abstractmethod
    async def save_result(self, event_id: str, payload: str):
        ...
