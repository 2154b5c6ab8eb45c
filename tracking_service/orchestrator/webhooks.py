"""
Outbound webhook emission.

The pipeline hands signed WebhookPayloads to a publisher. Delivery to
affiliate endpoints (retries, HTTP) is owned by a downstream consumer of the
Redis channel ``{WEBHOOK_CHANNEL_PREFIX}:{organizationId}``.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Tuple

from tracking_service.core.redis_client import RedisClient
from tracking_service.models.requests import WebhookPayload

logger = logging.getLogger(__name__)


class WebhookPublisher(ABC):

    @abstractmethod
    async def publish(self, organization_id: str, payload: WebhookPayload):
        ...


class RedisWebhookPublisher(WebhookPublisher):
    """Publishes each payload as JSON on the organization's channel"""

    def __init__(self, redis_client: RedisClient, channel_prefix: str = "tracking:webhooks"):
        self.redis = redis_client
        self.channel_prefix = channel_prefix

    def channel_for(self, organization_id: str) -> str:
        return f"{self.channel_prefix}:{organization_id}"

    async def publish(self, organization_id: str, payload: WebhookPayload):
        channel = self.channel_for(organization_id)
        message = payload.model_dump_json(by_alias=True, exclude_none=True)
        receivers = await self.redis.publish(channel, message)
        logger.debug(f"Published {payload.event.value} to {channel} ({receivers} receivers)")


class InMemoryOutbox(WebhookPublisher):
    """Collects payloads in process; used for single-process runs and tests"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self.sent: List[Tuple[str, WebhookPayload]] = []

    async def publish(self, organization_id: str, payload: WebhookPayload):
        self.sent.append((organization_id, payload))
        if len(self.sent) > self.max_size:
            del self.sent[: len(self.sent) - self.max_size]

    def events(self) -> List[str]:
        return [payload.event.value for _, payload in self.sent]
