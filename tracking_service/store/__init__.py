"""Storage backends for the tracking core"""

from tracking_service.store.base import StoreLockTimeout, TrackingStore
from tracking_service.store.memory import MemoryStore
from tracking_service.store.redis_store import RedisStore

__all__ = [
    "StoreLockTimeout",
    "TrackingStore",
    "MemoryStore",
    "RedisStore",
]
