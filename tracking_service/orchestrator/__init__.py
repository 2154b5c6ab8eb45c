"""Event pipeline orchestration"""

from tracking_service.orchestrator.directory import CampaignDirectory, InMemoryCampaignDirectory
from tracking_service.orchestrator.pipeline import EventPipeline, TrackOutcome, utc_now
from tracking_service.orchestrator.webhooks import (
    InMemoryOutbox,
    RedisWebhookPublisher,
    WebhookPublisher,
)

__all__ = [
    "CampaignDirectory",
    "InMemoryCampaignDirectory",
    "EventPipeline",
    "TrackOutcome",
    "utc_now",
    "InMemoryOutbox",
    "RedisWebhookPublisher",
    "WebhookPublisher",
]
