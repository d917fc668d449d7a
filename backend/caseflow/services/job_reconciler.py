"""
Job Reconciler
==============
Applies a job status delivery (webhook, or a synchronous backend response)
to the job row and, through the state machine, to the owning case.

Deliveries may be duplicated or arrive out of order, so every delivery is
first classified against the stored job row:

    NEW        no row yet                      -> insert, apply
    ADVANCED   STARTED -> SUCCEEDED | FAILED   -> update, apply
    DUPLICATE  same status again               -> refresh updated_at only
    STALE      row already terminal, differs   -> ignored

Only NEW and ADVANCED deliveries touch the case. For a successful
initial-parse the CSV rows and the Review transition are written in one
commit, so a case in Review always has its review set.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.db.models import Case, CaseStatus, EventType, Job, JobStatus, JobTask
from caseflow.db.schemas import JobWebhookPayload
from caseflow.services.audit_service import audit_service
from caseflow.services.case_state_machine import (
    JobFailed,
    JobStarted,
    JobSucceeded,
    apply_to_case,
    apply_transition,
    state_of,
)
from caseflow.services.notification_service import NotificationService, notification_service
from caseflow.services.result_extractor import ExtractionPolicy, ResultExtractor, result_extractor
from caseflow.utils.exceptions import TransitionRejected
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, enum.Enum):
    new = "new"
    advanced = "advanced"
    duplicate = "duplicate"
    stale = "stale"


@dataclass
class ReconcileResult:
    job: Job
    outcome: DeliveryOutcome
    case_updated: bool = False
    case_status: Optional[CaseStatus] = None


def classify_delivery(current: Optional[JobStatus], incoming: JobStatus) -> DeliveryOutcome:
    if current is None:
        return DeliveryOutcome.new
    if current == incoming:
        return DeliveryOutcome.duplicate
    if JobStatus(current).is_terminal:
        return DeliveryOutcome.stale
    return DeliveryOutcome.advanced


class JobReconciler:
    def __init__(
        self,
        extractor: Optional[ResultExtractor] = None,
        notifier: Optional[NotificationService] = None,
    ) -> None:
        self.extractor = extractor or result_extractor
        self.notifier = notifier or notification_service

    @property
    def policy(self) -> ExtractionPolicy:
        return ExtractionPolicy(settings.CSV_EXTRACTION_POLICY)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def reconcile(self, db: Session, payload: JobWebhookPayload) -> ReconcileResult:
        try:
            return await self._reconcile(db, payload)
        except Exception as exc:
            db.rollback()
            logger.exception("Reconcile failed for job %s (case %s)", payload.job_id, payload.session_id)
            self._force_failed(db, payload, str(exc))
            raise

    async def _reconcile(self, db: Session, payload: JobWebhookPayload) -> ReconcileResult:
        job, outcome = self._upsert_job(db, payload)
        logger.info(
            "Job %s delivery status=%s task=%s outcome=%s",
            job.id, payload.status.value, payload.task.value, outcome.value,
        )

        if outcome in (DeliveryOutcome.duplicate, DeliveryOutcome.stale):
            db.commit()
            return ReconcileResult(job=job, outcome=outcome)

        case = (
            db.query(Case)
            .filter(Case.id == job.session_id)
            .with_for_update()
            .first()
        )
        if case is None:
            logger.warning("Job %s references unknown case %s; job recorded only", job.id, job.session_id)
            db.commit()
            return ReconcileResult(job=job, outcome=outcome)

        if case.active_job_id and case.active_job_id != job.id:
            logger.warning(
                "Job %s is not the active job (%s) for case %s; case left unchanged",
                job.id, case.active_job_id, case.id,
            )
            db.commit()
            return ReconcileResult(job=job, outcome=outcome, case_status=case.status)

        status = JobStatus(payload.status)
        if status is JobStatus.started:
            return self._apply_started(db, case, job, outcome)
        if status is JobStatus.succeeded:
            if job.task is JobTask.initial_parse:
                return await self._apply_initial_parse_succeeded(db, case, job, outcome)
            return self._apply_result_succeeded(db, case, job, outcome)
        return await self._apply_failed(db, case, job, outcome)

    # ------------------------------------------------------------------
    # Job row
    # ------------------------------------------------------------------

    def _upsert_job(self, db: Session, payload: JobWebhookPayload) -> Tuple[Job, DeliveryOutcome]:
        job = self._locked_job(db, payload.job_id)
        if job is None:
            job = Job(
                id=payload.job_id,
                task=payload.task,
                session_id=payload.session_id,
                user_id=payload.user_id,
                input_url=payload.input_url,
                status=payload.status,
                url=payload.url,
                error=payload.error,
                idempotency_key=payload.idempotency_key,
            )
            db.add(job)
            try:
                db.flush()
                return job, DeliveryOutcome.new
            except IntegrityError:
                # Concurrent first delivery won the insert
                db.rollback()
                job = self._locked_job(db, payload.job_id)
                if job is None:
                    raise

        outcome = classify_delivery(job.status, payload.status)
        if outcome is DeliveryOutcome.duplicate:
            job.updated_at = utcnow()
        elif outcome is DeliveryOutcome.advanced:
            job.status = payload.status
            job.url = payload.url or job.url
            job.error = payload.error
            job.input_url = job.input_url or payload.input_url
            job.user_id = job.user_id or payload.user_id
            job.updated_at = utcnow()
        return job, outcome

    @staticmethod
    def _locked_job(db: Session, job_id: str) -> Optional[Job]:
        return db.query(Job).filter(Job.id == job_id).with_for_update().first()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _apply_started(self, db: Session, case: Case, job: Job, outcome: DeliveryOutcome) -> ReconcileResult:
        previous = case.status
        try:
            apply_to_case(case, JobStarted(JobTask(job.task)))
        except TransitionRejected as exc:
            return self._rejected(db, case, job, outcome, exc)

        case.active_job_id = job.id
        audit_service.record(
            db, case.id, EventType.analysis_submitted,
            {
                "job_id": job.id,
                "task": job.task.value,
                "status": JobStatus.started.value,
                "from_status": previous.value,
                "to_status": case.status.value,
            },
        )
        db.commit()
        return ReconcileResult(job=job, outcome=outcome, case_updated=True, case_status=case.status)

    async def _apply_initial_parse_succeeded(
        self, db: Session, case: Case, job: Job, outcome: DeliveryOutcome
    ) -> ReconcileResult:
        try:
            apply_transition(state_of(case), JobSucceeded(JobTask.initial_parse, extraction_ok=True))
        except TransitionRejected as exc:
            return self._rejected(db, case, job, outcome, exc)

        report = await self.extractor.extract(case, job.id, job.url)
        ok = report.is_acceptable(self.policy)
        previous = case.status
        previous_stage = case.hitl_stage.value if case.hitl_stage else None

        apply_to_case(case, JobSucceeded(JobTask.initial_parse, extraction_ok=ok))
        case.active_job_id = job.id

        if ok:
            for row in report.rows:
                db.add(row)
            case.csv_zip_url = job.url
            case.review_job_id = job.id
            audit_service.record(
                db, case.id, EventType.analysis_ready,
                {
                    "job_id": job.id,
                    "task": job.task.value,
                    "status": JobStatus.succeeded.value,
                    "csv_zip_url": job.url,
                    "from_status": previous.value,
                    "to_status": case.status.value,
                    "extraction": report.summary(),
                },
            )
            db.commit()
            return ReconcileResult(job=job, outcome=outcome, case_updated=True, case_status=case.status)

        error = report.error or (
            f"CSV extraction failed: {len(report.rows)}/{report.candidates} entries extracted "
            f"(policy={self.policy.value})"
        )
        audit_service.record(
            db, case.id, EventType.analysis_submitted,
            {
                "job_id": job.id,
                "task": job.task.value,
                "status": JobStatus.succeeded.value,
                "error": error,
                "stage": previous_stage or "initial_parse",
                "from_status": previous.value,
                "to_status": case.status.value,
                "extraction": report.summary(),
            },
        )
        db.commit()
        logger.error("Case %s failed after initial-parse job %s: %s", case.id, job.id, error)
        await self._notify_failure(case, job, error, previous_stage or "initial_parse")
        return ReconcileResult(job=job, outcome=outcome, case_updated=True, case_status=case.status)

    def _apply_result_succeeded(self, db: Session, case: Case, job: Job, outcome: DeliveryOutcome) -> ReconcileResult:
        previous = case.status
        try:
            apply_to_case(case, JobSucceeded(JobTask(job.task)))
        except TransitionRejected as exc:
            return self._rejected(db, case, job, outcome, exc)

        case.active_job_id = job.id
        case.result_zip_url = job.url
        audit_service.record(
            db, case.id, EventType.analysis_ready,
            {
                "job_id": job.id,
                "task": job.task.value,
                "status": JobStatus.succeeded.value,
                "result_zip_url": job.url,
                "from_status": previous.value,
                "to_status": case.status.value,
            },
        )
        db.commit()
        return ReconcileResult(job=job, outcome=outcome, case_updated=True, case_status=case.status)

    async def _apply_failed(self, db: Session, case: Case, job: Job, outcome: DeliveryOutcome) -> ReconcileResult:
        previous = case.status
        stage = case.hitl_stage.value if case.hitl_stage else job.task.value
        try:
            apply_to_case(case, JobFailed())
        except TransitionRejected as exc:
            return self._rejected(db, case, job, outcome, exc)

        case.active_job_id = job.id
        error = job.error or "Analysis backend reported failure"
        audit_service.record(
            db, case.id, EventType.analysis_submitted,
            {
                "job_id": job.id,
                "task": job.task.value,
                "status": JobStatus.failed.value,
                "error": error,
                "stage": stage,
                "from_status": previous.value,
                "to_status": case.status.value,
            },
        )
        db.commit()
        await self._notify_failure(case, job, error, stage)
        return ReconcileResult(job=job, outcome=outcome, case_updated=True, case_status=case.status)

    def _rejected(
        self, db: Session, case: Case, job: Job, outcome: DeliveryOutcome, exc: TransitionRejected
    ) -> ReconcileResult:
        logger.warning("Case %s not updated by job %s: %s", case.id, job.id, exc)
        db.commit()
        return ReconcileResult(job=job, outcome=outcome, case_status=case.status)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _notify_failure(self, case: Case, job: Job, error: str, stage: str) -> None:
        try:
            await self.notifier.send_failure_notification(
                case_id=case.id,
                case_name=case.name,
                job_id=job.id,
                task=job.task.value,
                error=error,
                stage=stage,
            )
        except Exception:
            logger.exception("Failure notification for case %s not sent", case.id)

    def _force_failed(self, db: Session, payload: JobWebhookPayload, error: str) -> None:
        """
        Best effort: fail the case with an explanatory event, but only while
        it is still waiting on this job. A case that already moved on (Review,
        Ready, another job) is left alone.
        """
        try:
            case = (
                db.query(Case)
                .filter(Case.id == payload.session_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if case is None or case.active_job_id != payload.job_id:
                db.rollback()
                return
            previous = case.status
            try:
                apply_to_case(case, JobFailed())
            except TransitionRejected as exc:
                logger.warning("Case %s kept as %s after reconcile error: %s", case.id, previous.value, exc)
                db.rollback()
                return
            audit_service.record(
                db, case.id, EventType.analysis_submitted,
                {
                    "job_id": payload.job_id,
                    "task": payload.task.value,
                    "status": payload.status.value,
                    "error": f"Internal error while applying job result: {error}",
                    "stage": "reconcile",
                    "from_status": previous.value,
                    "to_status": case.status.value,
                },
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not mark case %s as failed", payload.session_id)


job_reconciler = JobReconciler()
