"""
Job Dispatcher
==============
Sends an input archive to the analysis backend for one task:

    initial-parse     POST {BACKEND_API_URL}/initial-parse/
    final-analysis    POST {BACKEND_API_URL}/final-analysis/
    parse-statements  POST {BACKEND_API_URL}{BACKEND_GENERIC_PATH}

The case moves to Processing and the job row is committed *before* the
request goes out, so a webhook that arrives while we are still waiting on
the HTTP response finds its job. Non-2xx answers fail the case unless such
a webhook already resolved the job; there is no automatic retry. A 2xx carrying ``url`` is a synchronous result and goes
through the reconciler exactly as a SUCCEEDED webhook would.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.db.models import Case, CaseStatus, EventType, Job, JobStatus, JobTask, User
from caseflow.db.schemas import JobWebhookPayload
from caseflow.services.audit_service import audit_service
from caseflow.services.case_state_machine import DispatchFailed, Submit, apply_to_case
from caseflow.services.job_reconciler import JobReconciler, job_reconciler
from caseflow.services.notification_service import NotificationService, notification_service
from caseflow.utils.exceptions import CaseBusyError, DispatchError, TransitionRejected
from caseflow.utils.helpers import new_id, truncate_text, utcnow

logger = logging.getLogger(__name__)


class JobDispatcher:
    def __init__(
        self,
        reconciler: Optional[JobReconciler] = None,
        notifier: Optional[NotificationService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.reconciler = reconciler or job_reconciler
        self.notifier = notifier or notification_service
        self.transport = transport

    @staticmethod
    def endpoint_for(task: JobTask) -> str:
        base = settings.BACKEND_API_URL
        if task is JobTask.initial_parse:
            return f"{base}/initial-parse/"
        if task is JobTask.final_analysis:
            return f"{base}/final-analysis/"
        return f"{base}{settings.BACKEND_GENERIC_PATH}"

    async def submit(
        self,
        db: Session,
        case: Case,
        task: JobTask,
        archive_url: str,
        owner: User,
        archive_path: Optional[str] = None,
    ) -> Job:
        job = self._begin(db, case.id, task, archive_url, owner, archive_path)

        body = {
            "sessionId": job.session_id,
            "zipUrl": archive_url,
            "userId": owner.id,
            "jobId": job.id,
        }
        if task is JobTask.parse_statements:
            body["task"] = task.value
        url = self.endpoint_for(task)

        logger.info("Dispatching job %s task=%s case=%s to %s", job.id, task.value, job.session_id, url)
        try:
            async with httpx.AsyncClient(
                timeout=settings.BACKEND_TIMEOUT_SECONDS,
                transport=self.transport,
            ) as client:
                resp = await client.post(
                    url,
                    json=body,
                    headers={"X-Idempotency-Key": job.idempotency_key or job.id},
                )
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__
            if not await self._fail(db, job, owner, archive_url, error, status_code=None):
                return job
            raise DispatchError(f"Analysis backend unreachable: {error}") from exc

        if not 200 <= resp.status_code < 300:
            if not await self._fail(db, job, owner, archive_url, resp.text, status_code=resp.status_code):
                return job
            raise DispatchError(
                f"Analysis backend rejected {task.value}: HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError:
            data = None
        result_url = data.get("url") if isinstance(data, dict) else None

        if result_url:
            logger.info("Job %s completed synchronously", job.id)
            await self.reconciler.reconcile(
                db,
                JobWebhookPayload(
                    job_id=job.id,
                    task=task,
                    session_id=job.session_id,
                    user_id=owner.id,
                    input_url=archive_url,
                    status=JobStatus.succeeded,
                    url=result_url,
                    idempotency_key=job.idempotency_key,
                ),
            )
            db.refresh(job)
        else:
            logger.info("Job %s accepted by backend; awaiting webhook", job.id)

        return job

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _begin(
        self,
        db: Session,
        case_id: str,
        task: JobTask,
        archive_url: str,
        owner: User,
        archive_path: Optional[str],
    ) -> Job:
        """Lock the case, move it to Processing and record the job (committed)."""
        case = db.query(Case).filter(Case.id == case_id).with_for_update().first()
        if case.status is CaseStatus.processing:
            db.rollback()
            raise CaseBusyError(case_id, "Submit")

        previous = case.status
        try:
            apply_to_case(case, Submit(task))
        except TransitionRejected:
            db.rollback()
            raise

        job_id = new_id()
        job = Job(
            id=job_id,
            task=task,
            session_id=case.id,
            user_id=owner.id,
            input_url=archive_url,
            status=JobStatus.started,
            idempotency_key=job_id,
        )
        db.add(job)
        case.active_job_id = job_id
        if archive_path:
            case.input_zip_path = archive_path

        audit_service.record(
            db, case.id, EventType.analysis_submitted,
            {
                "job_id": job_id,
                "task": task.value,
                "zip_url": archive_url,
                "stage": case.hitl_stage.value if case.hitl_stage else None,
                "from_status": previous.value,
                "to_status": case.status.value,
            },
        )
        db.commit()
        return job

    async def _fail(
        self,
        db: Session,
        job: Job,
        owner: User,
        archive_url: str,
        error: str,
        status_code: Optional[int],
    ) -> bool:
        """
        Record a dispatch failure. Returns False when a job result was already
        applied while the request was in flight; the failure is then ignored.
        """
        logger.error(
            "Dispatch of job %s (%s) failed: status=%s body=%s",
            job.id, job.task.value, status_code, truncate_text(error, 500),
        )
        case = db.query(Case).filter(Case.id == job.session_id).with_for_update().populate_existing().first()
        job = db.query(Job).filter(Job.id == job.id).with_for_update().populate_existing().first()
        if job.status is not JobStatus.started:
            logger.warning("Job %s already %s; dispatch failure ignored", job.id, job.status.value)
            db.commit()
            return False

        stage = case.hitl_stage.value if case and case.hitl_stage else job.task.value
        job.status = JobStatus.failed
        job.error = error
        job.updated_at = utcnow()

        if case is not None and case.active_job_id == job.id:
            try:
                apply_to_case(case, DispatchFailed())
            except TransitionRejected as exc:
                logger.warning("Case %s not moved to Failed: %s", case.id, exc)
            audit_service.record(
                db, case.id, EventType.analysis_submitted,
                {
                    "job_id": job.id,
                    "task": job.task.value,
                    "error": error,
                    "http_status": status_code,
                    "stage": stage,
                },
            )
        db.commit()

        if case is None or job.task.value not in settings.support_ticket_tasks_list:
            return True
        try:
            await self.notifier.send_support_ticket(
                case_id=case.id,
                case_name=case.name,
                user_email=owner.email,
                organization_name=owner.organization_name,
                archive_url=archive_url,
                error_details=error,
                stage=stage,
            )
        except Exception:
            logger.exception("Support ticket for case %s not sent", case.id)
        return True


job_dispatcher = JobDispatcher()
