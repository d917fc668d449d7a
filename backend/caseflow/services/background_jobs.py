"""
services/background_jobs.py

Scheduled background jobs.

Jobs:
  1. expire_stale_cases
     - Moves cases stuck in Processing to Timeout (see services/watchdog.py).
     - Runs every TIMEOUT_SWEEP_INTERVAL_MINUTES.

  2. purge_idempotency_records
     - Deletes expired idempotency rows.
     - Runs every 60 minutes.

Started and stopped from the FastAPI startup/shutdown hooks in caseflow.main.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from caseflow.core.config import settings
from caseflow.db.database import SessionLocal

logger = logging.getLogger(__name__)

# ── Scheduler singleton ───────────────────────────────────────────────────────
_scheduler: AsyncIOScheduler | None = None


def start_scheduler() -> None:
    """
    Starts the APScheduler background job scheduler.
    Call this from FastAPI startup.
    """
    global _scheduler

    if not settings.SCHEDULER_ENABLED:
        logger.info("Background scheduler disabled (SCHEDULER_ENABLED=false)")
        return

    _scheduler = AsyncIOScheduler(timezone="UTC")

    # Job 1: Timeout watchdog
    _scheduler.add_job(
        expire_stale_cases,
        trigger=IntervalTrigger(minutes=settings.TIMEOUT_SWEEP_INTERVAL_MINUTES),
        id="expire_stale_cases",
        name="Expire cases stuck in Processing",
        replace_existing=True,
        max_instances=1,          # never run two at once
        misfire_grace_time=300,   # allow 5 min late start
    )

    # Job 2: Idempotency record cleanup (hourly)
    _scheduler.add_job(
        purge_idempotency_records,
        trigger=IntervalTrigger(minutes=60),
        id="purge_idempotency_records",
        name="Purge expired idempotency records",
        replace_existing=True,
        max_instances=1,
        misfire_grace_time=300,
    )

    _scheduler.start()
    logger.info("Background scheduler started: 2 jobs registered")


def shutdown_scheduler() -> None:
    """Gracefully shuts down the scheduler. Call from FastAPI shutdown."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Background scheduler shut down")
    _scheduler = None


# ============================================================================
# Job 1: Timeout watchdog
# ============================================================================

async def expire_stale_cases() -> None:
    from caseflow.services.watchdog import sweep_stale_cases

    db = SessionLocal()
    try:
        expired = await sweep_stale_cases(db)
        logger.info("Job: expire_stale_cases: expired=%s", len(expired))
    except Exception:
        db.rollback()
        logger.exception("Job: expire_stale_cases failed")
    finally:
        db.close()


# ============================================================================
# Job 2: Idempotency cleanup
# ============================================================================

async def purge_idempotency_records() -> None:
    from caseflow.services.idempotency_service import purge_expired

    db = SessionLocal()
    try:
        deleted = purge_expired(db)
        if deleted:
            logger.info("Job: purge_idempotency_records: deleted=%s", deleted)
    except Exception:
        db.rollback()
        logger.exception("Job: purge_idempotency_records failed")
    finally:
        db.close()
