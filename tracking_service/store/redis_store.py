"""
Redis-backed TrackingStore.

Key layout (``{p}`` is STORE_KEY_PREFIX):
    {p}:click:{click_id}            JSON ClickData, TTL = expiresAt + retention grace
    {p}:session:{session_id}        JSON SessionData
    {p}:visitor:{visitor_id}:clicks LIST of click ids in append order, TTL of its longest-lived click
    {p}:visitor:{visitor_id}:session current session id
    {p}:seen:{campaign_id}:{kind}   HASH value -> "{epoch seconds}|{event id}", TTL = history retention
    {p}:velocity:{affiliate_id}     ZSET attempt id scored by epoch seconds
    {p}:affiliate:{org}:{affiliate}:clicks     ZSET click id scored by click time
    {p}:affiliate:{org}:{affiliate}:converted  ZSET converted click id scored by click time
    {p}:event:{event_id}            JSON TrackingEvent, TTL = record retention
    {p}:result:{event_id}           serialized response, replayed verbatim, TTL = record retention
    {p}:lock:{key}                  redis-py Lock
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Tuple

from redis.exceptions import LockError

from tracking_service.core.redis_client import RedisClient
from tracking_service.models.tracking import ClickData, EventType, SessionData, TrackingEvent
from .base import StoreLockTimeout, TrackingStore

logger = logging.getLogger(__name__)

# Compare-and-set on ``converted``; the only write to a click after creation.
# A click already converted by the same conversion id counts as claimed.
CLAIM_CLICK_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local click = cjson.decode(raw)
if click['converted'] == true then
    if click['conversionId'] == ARGV[1] then
        return 1
    end
    return 0
end
click['converted'] = true
click['conversionId'] = ARGV[1]
click['conversionType'] = ARGV[2]
click['conversionTimestamp'] = ARGV[3]
redis.call('SET', KEYS[1], cjson.encode(click), 'KEEPTTL')
return 1
"""

# Append and extend the list TTL without ever shortening it (TTL is -1 when unset)
APPEND_CLICK_SCRIPT = """
redis.call('RPUSH', KEYS[1], ARGV[1])
if redis.call('TTL', KEYS[1]) < tonumber(ARGV[2]) then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 1
"""


class RedisStore(TrackingStore):
    """Shared store for multi-process deployments"""

    def __init__(
        self,
        redis_client: RedisClient,
        prefix: str = "tracking",
        lock_timeout: float = 10.0,
        record_ttl_seconds: Optional[int] = None,
        history_ttl_seconds: Optional[int] = None,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.lock_timeout = lock_timeout
        self.record_ttl_seconds = record_ttl_seconds
        self.history_ttl_seconds = history_ttl_seconds

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    async def connect(self):
        await self.redis.connect()

    async def disconnect(self):
        await self.redis.disconnect()

    async def ping(self) -> bool:
        return await self.redis.ping()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.client.lock(
            self._key("lock", key),
            timeout=self.lock_timeout * 3,
            blocking_timeout=self.lock_timeout,
        )
        async with self.redis.breaker:
            acquired = await lock.acquire()
        if not acquired:
            raise StoreLockTimeout(key, self.lock_timeout)
        try:
            yield
        finally:
            try:
                async with self.redis.breaker:
                    await lock.release()
            except LockError as e:
                # Lock expired while held; the next writer already owns it
                logger.warning(f"Lost lock on {key}: {e}")

    async def _get(self, key: str) -> Optional[str]:
        async with self.redis.breaker:
            return await self.redis.client.get(key)

    async def _set(self, key: str, value: str, ttl_seconds: Optional[int] = None):
        async with self.redis.breaker:
            if ttl_seconds is not None:
                await self.redis.client.set(key, value, ex=max(1, ttl_seconds))
            else:
                await self.redis.client.set(key, value)

    async def _delete(self, key: str):
        async with self.redis.breaker:
            await self.redis.client.delete(key)

    async def _scan_ids(self, kind: str) -> List[str]:
        pattern = self._key(kind, "*")
        offset = len(self._key(kind)) + 1
        ids = []
        async with self.redis.breaker:
            async for key in self.redis.client.scan_iter(match=pattern, count=500):
                ids.append(key[offset:])
        return ids

    # Clicks

    async def get_click(self, click_id: str) -> Optional[ClickData]:
        raw = await self._get(self._key("click", click_id))
        return ClickData.model_validate_json(raw) if raw else None

    async def save_click(self, click: ClickData, ttl_seconds: Optional[int] = None):
        await self._set(self._key("click", click.id), click.model_dump_json(by_alias=True), ttl_seconds)

    async def delete_click(self, click_id: str):
        await self._delete(self._key("click", click_id))

    async def claim_click(
        self,
        click_id: str,
        conversion_id: str,
        conversion_type: EventType,
        at: datetime,
    ) -> bool:
        async with self.redis.breaker:
            result = await self.redis.client.eval(
                CLAIM_CLICK_SCRIPT,
                1,
                self._key("click", click_id),
                conversion_id,
                conversion_type.value,
                at.isoformat(),
            )
        return int(result) == 1

    async def list_click_ids(self) -> List[str]:
        return await self._scan_ids("click")

    # Visitor indexes

    async def append_visitor_click(self, visitor_id: str, click_id: str, ttl_seconds: Optional[int] = None):
        key = self._key("visitor", visitor_id, "clicks")
        async with self.redis.breaker:
            if ttl_seconds is None:
                await self.redis.client.rpush(key, click_id)
            else:
                await self.redis.client.eval(APPEND_CLICK_SCRIPT, 1, key, click_id, max(1, ttl_seconds))

    async def get_visitor_clicks(self, visitor_id: str) -> List[str]:
        async with self.redis.breaker:
            return list(await self.redis.client.lrange(self._key("visitor", visitor_id, "clicks"), 0, -1))

    async def remove_visitor_click(self, visitor_id: str, click_id: str):
        async with self.redis.breaker:
            await self.redis.client.lrem(self._key("visitor", visitor_id, "clicks"), 0, click_id)

    async def get_visitor_session(self, visitor_id: str) -> Optional[str]:
        return await self._get(self._key("visitor", visitor_id, "session"))

    async def set_visitor_session(self, visitor_id: str, session_id: str):
        await self._set(self._key("visitor", visitor_id, "session"), session_id)

    # Sessions

    async def get_session(self, session_id: str) -> Optional[SessionData]:
        raw = await self._get(self._key("session", session_id))
        return SessionData.model_validate_json(raw) if raw else None

    async def save_session(self, session: SessionData):
        await self._set(self._key("session", session.id), session.model_dump_json(by_alias=True))

    async def delete_session(self, session_id: str):
        session = await self.get_session(session_id)
        await self._delete(self._key("session", session_id))
        if session is not None:
            visitor_key = self._key("visitor", session.visitor_id, "session")
            if await self._get(visitor_key) == session_id:
                await self._delete(visitor_key)

    async def list_session_ids(self) -> List[str]:
        return await self._scan_ids("session")

    # Fraud history

    async def last_seen(
        self,
        campaign_id: str,
        kind: str,
        value: str,
        exclude_event_id: Optional[str] = None,
    ) -> Optional[datetime]:
        async with self.redis.breaker:
            raw = await self.redis.client.hget(self._key("seen", campaign_id, kind), value)
        if raw is None:
            return None
        epoch, _, event_id = raw.partition("|")
        if exclude_event_id is not None and event_id == exclude_event_id:
            return None
        return datetime.fromtimestamp(float(epoch), tz=timezone.utc)

    async def record_seen(self, campaign_id: str, kind: str, value: str, at: datetime, event_id: str):
        key = self._key("seen", campaign_id, kind)
        async with self.redis.breaker:
            await self.redis.client.hset(key, value, f"{at.timestamp()}|{event_id}")
            if self.history_ttl_seconds is not None:
                await self.redis.client.expire(key, self.history_ttl_seconds)

    async def record_attempt(self, affiliate_id: str, attempt_id: str, at: datetime, window_seconds: int) -> int:
        key = self._key("velocity", affiliate_id)
        now = at.timestamp()
        async with self.redis.breaker:
            pipe = self.redis.client.pipeline(transaction=True)
            pipe.zadd(key, {attempt_id: now}, nx=True)
            pipe.zremrangebyscore(key, "-inf", now - window_seconds)
            pipe.zcount(key, now - window_seconds, now)
            pipe.expire(key, window_seconds * 2)
            results = await pipe.execute()
        return int(results[2])

    # Affiliate statistics

    async def _index_click(self, key: str, click_id: str, at: datetime):
        async with self.redis.breaker:
            await self.redis.client.zadd(key, {click_id: at.timestamp()})
            if self.record_ttl_seconds is not None:
                await self.redis.client.expire(key, self.record_ttl_seconds)

    async def record_affiliate_click(self, organization_id: str, affiliate_id: str, click_id: str, at: datetime):
        await self._index_click(self._key("affiliate", organization_id, affiliate_id, "clicks"), click_id, at)

    async def record_affiliate_conversion(
        self, organization_id: str, affiliate_id: str, click_id: str, clicked_at: datetime
    ):
        await self._index_click(
            self._key("affiliate", organization_id, affiliate_id, "converted"), click_id, clicked_at
        )

    async def affiliate_click_counts(
        self, organization_id: str, affiliate_id: str, start: datetime, end: datetime
    ) -> Tuple[int, int]:
        low, high = start.timestamp(), end.timestamp()
        async with self.redis.breaker:
            clicks = await self.redis.client.zcount(
                self._key("affiliate", organization_id, affiliate_id, "clicks"), low, high
            )
            converted = await self.redis.client.zcount(
                self._key("affiliate", organization_id, affiliate_id, "converted"), low, high
            )
        return int(clicks), int(converted)

    # Events and idempotent results

    async def get_event(self, event_id: str) -> Optional[TrackingEvent]:
        raw = await self._get(self._key("event", event_id))
        return TrackingEvent.model_validate_json(raw) if raw else None

    async def save_event(self, event: TrackingEvent):
        await self._set(self._key("event", event.id), event.model_dump_json(by_alias=True), self.record_ttl_seconds)

    async def get_result(self, event_id: str) -> Optional[str]:
        return await self._get(self._key("result", event_id))

    async def save_result(self, event_id: str, payload: str):
        await self._set(self._key("result", event_id), payload, self.record_ttl_seconds)
