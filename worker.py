"""
Headless Sync Worker
Runs the cadence scheduler without the ops API.

Usage:
    python worker.py

Deployment:
    - Type: Background Worker
    - Start Command: python worker.py
    - Environment: Same as the API (SUPABASE_URL, SUPABASE_SERVICE_KEY, ...)
    - Set SCHEDULER_ENABLED=false on the API so only one process schedules
"""
import asyncio
import logging
import signal

from backup_sync.core.config import settings
from backup_sync.core.dependencies import initialize_clients, shutdown_clients

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


async def run():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await initialize_clients(start_scheduler=True)
    logger.info("✅ Sync worker running")
    try:
        await stop.wait()
    finally:
        logger.info("Stopping sync worker...")
        await shutdown_clients()


if __name__ == "__main__":
    asyncio.run(run())
