"""
Timeout watchdog.

A case left in Processing with no update on its active job for
JOB_TIMEOUT_HOURS is moved to Timeout. The job row itself stays STARTED, so
a late webhook can still deliver the result (Timeout accepts job results).

Applied from three places: the scheduled sweep, job-status polling, and
the admin sweep endpoint.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.db.models import Case, CaseStatus, EventType, Job
from caseflow.services.audit_service import audit_service
from caseflow.services.case_state_machine import WatchdogExpired, apply_to_case
from caseflow.services.notification_service import NotificationService, notification_service
from caseflow.utils.exceptions import TransitionRejected
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def last_activity(db: Session, case: Case) -> datetime:
    if case.active_job_id:
        job = db.query(Job).filter(Job.id == case.active_job_id).populate_existing().first()
        if job is not None:
            return job.updated_at
    return case.updated_at


def is_stale(db: Session, case: Case, now: Optional[datetime] = None) -> bool:
    if case.status is not CaseStatus.processing:
        return False
    now = now or utcnow()
    return now - last_activity(db, case) > timedelta(hours=settings.JOB_TIMEOUT_HOURS)


async def expire_if_stale(
    db: Session,
    case: Case,
    notifier: Optional[NotificationService] = None,
    now: Optional[datetime] = None,
) -> bool:
    if not is_stale(db, case, now):
        return False

    # Re-read under lock: a job result may have been applied since the case was loaded
    locked = (
        db.query(Case)
        .filter(Case.id == case.id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if locked is None or not is_stale(db, locked, now):
        db.rollback()
        return False
    case = locked

    stage = case.hitl_stage.value if case.hitl_stage else None
    try:
        apply_to_case(case, WatchdogExpired())
    except TransitionRejected as exc:
        logger.warning("Watchdog could not expire case %s: %s", case.id, exc)
        db.rollback()
        return False

    error = f"No job update for more than {settings.JOB_TIMEOUT_HOURS:g} hours"
    audit_service.record(
        db, case.id, EventType.analysis_submitted,
        {
            "job_id": case.active_job_id,
            "error": error,
            "stage": stage,
            "from_status": CaseStatus.processing.value,
            "to_status": CaseStatus.timeout.value,
        },
    )
    db.commit()
    logger.warning("Case %s timed out waiting for job %s", case.id, case.active_job_id)

    try:
        await (notifier or notification_service).send_failure_notification(
            case_id=case.id,
            case_name=case.name,
            job_id=case.active_job_id,
            task="timeout",
            error=error,
            stage=stage or "-",
        )
    except Exception:
        logger.exception("Timeout notification for case %s not sent", case.id)
    return True


async def sweep_stale_cases(
    db: Session,
    notifier: Optional[NotificationService] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Expire every stale Processing case. Returns the expired case ids."""
    expired: List[str] = []
    cases = db.query(Case).filter(Case.status == CaseStatus.processing).all()
    for case in cases:
        try:
            if await expire_if_stale(db, case, notifier=notifier, now=now):
                expired.append(case.id)
        except Exception:
            db.rollback()
            logger.exception("Watchdog failed for case %s", case.id)
    if expired:
        logger.info("Watchdog expired %s case(s)", len(expired))
    return expired
