"""
Unified Configuration
All environment variables and settings in one place

ARCHITECTURE:
- ONE Supabase for connections, synced workspace data and sync history
- Slack Web API as the upstream provider (base URL configurable)
- Redis only backs the Dramatiq job queue

SECURITY:
- All secrets loaded from environment variables
- Provider bearer tokens live on the connection rows, never in settings
"""
from typing import Optional
import logging
from pydantic_settings import BaseSettings
from pydantic import Field, model_validator

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Unified application settings.
    Validates all environment variables at startup.
    """

    # ============================================================================
    # SERVER
    # ============================================================================

    environment: str = Field(default="production", description="Environment: development/staging/production")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # ============================================================================
    # DATABASE (Supabase PostgreSQL)
    # ============================================================================

    supabase_url: str = Field(description="Supabase project URL")
    supabase_anon_key: str = Field(description="Supabase anonymous key")
    supabase_service_key: str = Field(description="Supabase service key (backend uses this)")

    # Redis (job queue)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL for Dramatiq")

    # ============================================================================
    # SLACK PROVIDER
    # ============================================================================

    slack_api_base_url: str = Field(default="https://slack.com/api", description="Slack Web API base endpoint")
    slack_page_size: int = Field(default=100, description="Records requested per page from Slack list endpoints")
    provider_timeout_seconds: float = Field(default=30.0, description="Timeout for a single provider HTTP call")
    provider_max_retries: int = Field(default=3, description="Retries for rate-limited or transient provider failures")
    provider_retry_min_wait: float = Field(default=1.0, description="Minimum backoff between provider retries (seconds)")
    provider_retry_max_wait: float = Field(default=30.0, description="Maximum backoff between provider retries (seconds)")

    # ============================================================================
    # SYNC ENGINE
    # ============================================================================

    sync_default_interval_minutes: int = Field(default=30, description="Default minutes between scheduled syncs per connection")
    sync_scheduler_enabled: bool = Field(default=False, description="Run the periodic sync scheduler inside the API process")
    sync_scheduler_poll_seconds: int = Field(default=60, description="Seconds between scheduler ticks")
    sync_stale_run_timeout_minutes: int = Field(default=120, description="Minutes after which an in_progress run is considered abandoned")
    sync_max_concurrent_containers: int = Field(default=1, description="Containers synced concurrently within one run (1 = sequential)")

    # ============================================================================
    # PRODUCTION INFRASTRUCTURE
    # ============================================================================

    # Error tracking (Sentry)
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")

    # ============================================================================
    # CORS
    # ============================================================================

    cors_allowed_origins: str = Field(default="http://localhost:3000", description="Comma-separated list of allowed CORS origins")

    @model_validator(mode='after')
    def validate_settings(self):
        """
        Validate critical settings at startup.

        - Warn if running in production without Sentry
        - Warn if debug mode enabled in production
        - Clamp sync concurrency to at least one container
        """
        if self.environment == "production":
            if self.debug:
                logger.warning("⚠️  DEBUG MODE ENABLED IN PRODUCTION! This is insecure.")

            if not self.sentry_dsn:
                logger.warning("⚠️  Sentry not configured in production. Error tracking disabled.")

        if self.sync_max_concurrent_containers < 1:
            logger.warning(
                f"⚠️  SYNC_MAX_CONCURRENT_CONTAINERS={self.sync_max_concurrent_containers} is invalid, using 1"
            )
            self.sync_max_concurrent_containers = 1

        if not self.redis_url:
            logger.warning("⚠️  REDIS_URL not set. Background sync jobs will not work.")

        logger.info("=" * 80)
        logger.info("Workspace Sync Configuration Loaded")
        logger.info("=" * 80)
        logger.info(f"Environment: {self.environment}")
        logger.info(f"Debug: {self.debug}")
        logger.info(f"Supabase URL: {self.supabase_url}")
        logger.info(f"Slack API: {self.slack_api_base_url}")
        logger.info(f"Default sync interval: {self.sync_default_interval_minutes} minutes")
        logger.info(f"Scheduler: {'✅ Enabled' if self.sync_scheduler_enabled else '❌ Disabled'}")
        logger.info(f"Redis: {'✅ Configured' if self.redis_url else '❌ Not configured'}")
        logger.info(f"Sentry: {'✅ Configured' if self.sentry_dsn else '❌ Not configured'}")
        logger.info("=" * 80)

        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
