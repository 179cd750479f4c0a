"""Background scheduler task for the periodic expiry sweep"""
import asyncio

from sqlalchemy.orm import sessionmaker

from paysync.core.config import Settings
from paysync.core.logging import sweep_logger
from paysync.services.sweeper import run_locked_sweep


async def expiry_sweep_task(settings: Settings, session_factory: sessionmaker, redis_client):
    """Background task that downgrades expired entitlements every SWEEP_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.SWEEP_INTERVAL_SECONDS)

            # The sweep does blocking I/O; keep it off the event loop
            result = await asyncio.to_thread(
                run_locked_sweep,
                session_factory,
                redis_client,
                page_size=settings.SWEEP_PAGE_SIZE,
                lock_timeout=settings.SWEEP_LOCK_TIMEOUT,
            )
            if result.skipped:
                sweep_logger.info("Scheduled sweep skipped, another run holds the lock")
            else:
                sweep_logger.info(
                    f"Scheduled sweep: {result.downgrades} downgraded of {result.processed} candidates"
                )
        except asyncio.CancelledError:
            sweep_logger.info("Expiry sweep task cancelled")
            raise
        except Exception as e:
            sweep_logger.error(f"Error in expiry sweep task: {e}", exc_info=True)
            await asyncio.sleep(60)  # Wait before retrying on error
