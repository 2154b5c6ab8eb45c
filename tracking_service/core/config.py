from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List, Optional
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Redis (optional - falls back to the in-process store when unset)
    REDIS_URL: Optional[str] = None
    STORE_KEY_PREFIX: str = "tracking"
    STORE_BREAKER_FAILURE_THRESHOLD: int = 5
    STORE_BREAKER_RECOVERY_SECONDS: float = 30.0

    # JSON file with organizations and campaigns (camelCase), loaded at startup
    CAMPAIGN_CONFIG_PATH: Optional[str] = None

    # CORS - Stored as string, parsed via get_cors_origins() method
    CORS_ORIGINS: Optional[str] = None

    def get_cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS from comma-separated string or JSON array"""
        if not self.CORS_ORIGINS:
            return []
        v = self.CORS_ORIGINS.strip()
        if not v:
            return []
        # Try JSON array first
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # Attribution defaults (mirrors the SDK defaults)
    DEFAULT_CONVERSION_WINDOW_SECONDS: int = 604800  # 7 days
    DEFAULT_ATTRIBUTION_MODEL: str = "last-click"
    TIME_DECAY_HALF_LIFE_SECONDS: int = 604800  # 7 days

    # Click / session bookkeeping
    CLICK_DEDUP_WINDOW_SECONDS: int = 43200  # 12 hours
    CLICK_RETENTION_GRACE_SECONDS: int = 86400
    SESSION_TIMEOUT_SECONDS: int = 1800
    REAPER_INTERVAL_SECONDS: int = 300

    # Fraud history
    VELOCITY_WINDOW_SECONDS: int = 3600
    FRAUD_HISTORY_RETENTION_SECONDS: int = 7776000  # 90 days

    # Stored events, replayable results and affiliate click indexes
    RECORD_RETENTION_SECONDS: int = 7776000  # 90 days

    # Affiliate summary range when the caller gives none
    SUMMARY_DEFAULT_RANGE_SECONDS: int = 2592000  # 30 days

    # Context sanitization
    METADATA_MAX_BYTES: int = 4096
    METADATA_MAX_KEYS: int = 50
    CONTEXT_FIELD_MAX_LENGTH: int = 512
    URL_MAX_LENGTH: int = 2048
    ANONYMIZE_IP: bool = False

    # Pipeline deadlines
    PIPELINE_TIMEOUT_SECONDS: float = 5.0
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # Outbound webhooks
    WEBHOOK_SECRET: str = ""
    WEBHOOK_CHANNEL_PREFIX: str = "tracking:webhooks"

    # Ingestion
    INGEST_MAX_REQUESTS_PER_MINUTE: int = 600
    BATCH_MAX_EVENTS: int = 100
    WORKER_POOL_SIZE: int = 4
    WORKER_QUEUE_SIZE: int = 1000

    @field_validator("DEFAULT_ATTRIBUTION_MODEL")
    @classmethod
    def check_attribution_model(cls, v: str) -> str:
        """Reject unknown attribution models at startup rather than per event."""
        allowed = {"first-click", "last-click", "linear", "time-decay"}
        if v not in allowed:
            raise ValueError(f"DEFAULT_ATTRIBUTION_MODEL must be one of {sorted(allowed)}")
        return v

    @field_validator("TIME_DECAY_HALF_LIFE_SECONDS", "DEFAULT_CONVERSION_WINDOW_SECONDS")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
