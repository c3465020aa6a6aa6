"""
Dramatiq Background Worker
Processes manually queued Slack connection syncs

Usage:
    dramatiq worker -p 2 -t 4

Environment: same as the API (REDIS_URL, SUPABASE_URL, SUPABASE_SERVICE_KEY, ...)
"""
import logging

from app.core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

if settings.sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.logging import LoggingIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            traces_sample_rate=0.1,
            integrations=[
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
            ]
        )
        logger.info("✅ Sentry initialized in worker")
    except Exception as e:
        logger.warning(f"⚠️  Failed to initialize Sentry in worker: {e}")
else:
    logger.info("ℹ️  Sentry not configured (SENTRY_DSN not set)")

# Importing the tasks registers them with the broker
try:
    from app.services.jobs.broker import broker
    from app.services.jobs.tasks import sync_connection_task

    logger.info("✅ Sync worker initialized")
    logger.info("📋 Registered tasks: sync_connection_task")

except Exception as e:
    logger.error(f"❌ Failed to initialize worker: {e}", exc_info=True)
    raise
