"""Background scheduler for the session lifecycle sweep"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import asyncio
from concurrent.futures import ThreadPoolExecutor

from pledgehub.config import settings
from pledgehub.log_config import logger

scheduler = AsyncIOScheduler()

# Sweeps touch the database synchronously; keep them off the event loop.
# One worker so two sweeps never race each other on the same sessions.
LIFECYCLE_POOL = ThreadPoolExecutor(
    max_workers=1,
    thread_name_prefix="session-lifecycle-"
)

# Track shutdown state to prevent repeated shutdown calls
_pool_shutdown = False

LIFECYCLE_TIMEOUT = 300  # 5 minutes


async def run_session_lifecycle_job():
    """
    Close expired sessions and execute the ones due at session end.

    Runs in the dedicated lifecycle pool with timeout protection. A failed
    sweep is logged and retried on the next interval.
    """
    loop = asyncio.get_event_loop()

    def _sweep():
        from jobs.session_lifecycle import run_session_lifecycle
        return run_session_lifecycle()

    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(LIFECYCLE_POOL, _sweep),
            timeout=LIFECYCLE_TIMEOUT,
        )
        if result["closed"] or result["executed"]:
            logger.info(
                f"Session lifecycle sweep: {len(result['closed'])} closed, "
                f"{len(result['executed'])} executed"
            )
    except asyncio.TimeoutError:
        logger.error(f"Session lifecycle sweep timed out after {LIFECYCLE_TIMEOUT}s")
    except Exception as e:
        logger.exception(f"Session lifecycle sweep failed: {e}")


def start_scheduler():
    """Register the lifecycle sweep and start the scheduler."""
    scheduler.add_job(
        run_session_lifecycle_job,
        trigger=IntervalTrigger(seconds=settings.session_expiry_interval_seconds),
        id='session_lifecycle',
        name='Session Lifecycle Sweep',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started: session lifecycle sweep every "
        f"{settings.session_expiry_interval_seconds}s"
    )


def stop_scheduler():
    """Stop the background scheduler and cleanup the thread pool"""
    global _pool_shutdown

    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")

    if _pool_shutdown:
        logger.debug("Lifecycle pool already shut down")
        return

    try:
        LIFECYCLE_POOL.shutdown(wait=True, cancel_futures=True)
    except RuntimeError as e:
        logger.debug(f"LIFECYCLE_POOL shutdown skipped: {e}")
    _pool_shutdown = True
