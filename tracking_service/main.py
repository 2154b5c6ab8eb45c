from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional
import asyncio
import logging

from tracking_service.core.circuit_breaker import get_circuit_breaker
from tracking_service.core.config import Settings, get_settings
from tracking_service.core.errors import TrackingError
from tracking_service.core.rate_limiter import RateLimiter
from tracking_service.core.redis_client import RedisClient
from tracking_service.core.worker_pool import AsyncWorkerPool
from tracking_service.middleware import (
    error_handler_middleware,
    tracking_error_handler,
    validation_error_handler,
)
from tracking_service.orchestrator.directory import CampaignDirectory, InMemoryCampaignDirectory
from tracking_service.orchestrator.pipeline import EventPipeline, utc_now
from tracking_service.orchestrator.webhooks import (
    InMemoryOutbox,
    RedisWebhookPublisher,
    WebhookPublisher,
)
from tracking_service.store import MemoryStore, RedisStore, TrackingStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def _reaper_loop(pipeline: EventPipeline, rate_limiter: RateLimiter, interval: float):
    """Purge expired clicks, idle sessions and idle rate-limit windows every ``interval`` seconds."""
    while True:
        try:
            await asyncio.sleep(interval)
            await pipeline.purge_expired()
            rate_limiter.prune()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Error in retention reaper: {e}")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[TrackingStore] = None,
    directory: Optional[CampaignDirectory] = None,
    webhooks: Optional[WebhookPublisher] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Build the tracking service.

    Collaborators not passed in are built from settings: Redis-backed when
    REDIS_URL is set, in-process otherwise.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting affiliate tracking service...")

        redis_client = None
        if settings.REDIS_URL and (store is None or webhooks is None):
            breaker = get_circuit_breaker("redis")
            breaker.failure_threshold = settings.STORE_BREAKER_FAILURE_THRESHOLD
            breaker.recovery_timeout = settings.STORE_BREAKER_RECOVERY_SECONDS
            redis_client = RedisClient(settings.REDIS_URL, breaker=breaker)

        if store is not None:
            tracking_store = store
        elif redis_client is not None:
            tracking_store = RedisStore(
                redis_client,
                prefix=settings.STORE_KEY_PREFIX,
                lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
                record_ttl_seconds=settings.RECORD_RETENTION_SECONDS,
                history_ttl_seconds=settings.FRAUD_HISTORY_RETENTION_SECONDS,
            )
        else:
            logger.warning("REDIS_URL not set, using the in-process store (single instance only)")
            tracking_store = MemoryStore(lock_timeout=settings.LOCK_TIMEOUT_SECONDS)

        if webhooks is not None:
            publisher = webhooks
        elif redis_client is not None:
            publisher = RedisWebhookPublisher(redis_client, channel_prefix=settings.WEBHOOK_CHANNEL_PREFIX)
        else:
            publisher = InMemoryOutbox()

        if directory is not None:
            campaigns = directory
        elif settings.CAMPAIGN_CONFIG_PATH:
            campaigns = InMemoryCampaignDirectory.from_file(settings.CAMPAIGN_CONFIG_PATH)
        else:
            logger.warning("CAMPAIGN_CONFIG_PATH not set, starting with an empty campaign directory")
            campaigns = InMemoryCampaignDirectory()

        worker_pool = AsyncWorkerPool(
            num_workers=settings.WORKER_POOL_SIZE,
            queue_size=settings.WORKER_QUEUE_SIZE,
        )
        rate_limiter = RateLimiter(
            name="ingest",
            max_requests=settings.INGEST_MAX_REQUESTS_PER_MINUTE,
            window_seconds=60,
        )
        pipeline = EventPipeline(
            tracking_store,
            campaigns,
            publisher,
            settings=settings,
            clock=clock,
            worker_pool=worker_pool,
        )
        reaper: Optional[asyncio.Task] = None

        try:
            if redis_client is not None:
                await redis_client.connect()
            if store is not None:
                await store.connect()

            await worker_pool.start()
            logger.info(
                f"Worker pool initialized: {settings.WORKER_POOL_SIZE} workers, "
                f"queue_size={settings.WORKER_QUEUE_SIZE}"
            )

            reaper = asyncio.create_task(
                _reaper_loop(pipeline, rate_limiter, settings.REAPER_INTERVAL_SECONDS)
            )
            logger.info("Retention reaper started")

            app.state.store = tracking_store
            app.state.directory = campaigns
            app.state.webhooks = publisher
            app.state.worker_pool = worker_pool
            app.state.rate_limiter = rate_limiter
            app.state.pipeline = pipeline

            logger.info("Tracking service ready")
        except Exception as e:
            logger.error(f"Startup failed: {e}")
            raise

        yield

        # Shutdown
        logger.info("Shutting down tracking service...")

        if reaper is not None:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass

        await worker_pool.stop()

        if store is not None:
            await store.disconnect()
        if redis_client is not None:
            await redis_client.disconnect()

    app = FastAPI(
        title="Affiliate Tracking Service",
        description="Click tracking, conversion attribution, fraud screening and commission calculation",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Organization-Key"],
    )

    app.middleware("http")(error_handler_middleware)

    app.add_exception_handler(TrackingError, tracking_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    from tracking_service.api.v1 import health, tracking
    app.include_router(health.router, tags=["Health"])
    app.include_router(tracking.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {
            "service": "Affiliate Tracking Service",
            "status": "operational",
            "version": "1.0.0"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
