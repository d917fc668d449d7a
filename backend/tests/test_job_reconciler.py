"""Tests for applying job status deliveries to jobs and cases."""

import pytest
from sqlalchemy.exc import OperationalError

from caseflow.db.models import (
    CaseCsvFile,
    CaseStatus,
    Event,
    EventType,
    HitlStage,
    Job,
    JobStatus,
    JobTask,
)
from caseflow.db.schemas import JobWebhookPayload
from caseflow.services.job_reconciler import DeliveryOutcome, JobReconciler, classify_delivery, job_reconciler

from conftest import make_case, make_job, make_zip

CSV_URL = "https://results.test/job-1/csv.zip"
RESULT_URL = "https://results.test/job-2/result.zip"


def payload(case, job_id, status, task=JobTask.initial_parse, **extra):
    return JobWebhookPayload(
        job_id=job_id,
        task=task,
        session_id=case.id,
        user_id=case.creator_id,
        status=status,
        **extra,
    )


def events_of(db, case, event_type=None):
    query = db.query(Event).filter(Event.case_id == case.id)
    if event_type is not None:
        query = query.filter(Event.type == event_type)
    return query.all()


@pytest.fixture()
def processing_case(db, user):
    case = make_case(
        db, user,
        status=CaseStatus.processing,
        hitl_stage=HitlStage.initial_parse,
        active_job_id="job-1",
    )
    make_job(db, case, "job-1")
    return case


class TestClassifyDelivery:
    def test_outcomes(self):
        assert classify_delivery(None, JobStatus.started) is DeliveryOutcome.new
        assert classify_delivery(JobStatus.started, JobStatus.started) is DeliveryOutcome.duplicate
        assert classify_delivery(JobStatus.started, JobStatus.succeeded) is DeliveryOutcome.advanced
        assert classify_delivery(JobStatus.succeeded, JobStatus.started) is DeliveryOutcome.stale
        assert classify_delivery(JobStatus.failed, JobStatus.succeeded) is DeliveryOutcome.stale


class TestInitialParse:
    @pytest.mark.asyncio
    async def test_success_moves_case_to_review_with_csv_rows(self, db, processing_case, backend, fake_s3):
        backend.archives[CSV_URL] = make_zip({"a.csv": b"1", "b.csv": b"2", "c.csv": b"3"})

        result = await job_reconciler.reconcile(
            db, payload(processing_case, "job-1", JobStatus.succeeded, url=CSV_URL)
        )

        db.refresh(processing_case)
        assert result.outcome is DeliveryOutcome.advanced
        assert result.case_updated
        assert processing_case.status is CaseStatus.review
        assert processing_case.hitl_stage is HitlStage.review
        assert processing_case.csv_zip_url == CSV_URL
        assert processing_case.review_job_id == "job-1"

        rows = db.query(CaseCsvFile).filter(CaseCsvFile.case_id == processing_case.id).all()
        assert sorted(r.csv_file_name for r in rows) == ["a.csv", "b.csv", "c.csv"]
        assert all(r.original_csv_path in fake_s3.objects for r in rows)

        ready = events_of(db, processing_case, EventType.analysis_ready)
        assert len(ready) == 1
        assert ready[0].payload["csv_zip_url"] == CSV_URL
        assert ready[0].payload["extraction"]["extracted"] == 3

        job = db.get(Job, "job-1")
        assert job.status is JobStatus.succeeded
        assert job.url == CSV_URL

    @pytest.mark.asyncio
    async def test_archive_without_csv_fails_case_and_notifies(self, db, processing_case, backend, notifications):
        backend.archives[CSV_URL] = make_zip({"notes.txt": b"no statements"})

        await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.succeeded, url=CSV_URL))

        db.refresh(processing_case)
        assert processing_case.status is CaseStatus.failed
        assert processing_case.hitl_stage is None
        assert processing_case.review_job_id is None
        assert db.query(CaseCsvFile).count() == 0

        failure = events_of(db, processing_case, EventType.analysis_submitted)[-1]
        assert "0/0" in failure.payload["error"]
        assert failure.payload["stage"] == "initial_parse"
        notifications.failure_notification.assert_awaited_once()
        assert notifications.failure_notification.await_args.kwargs["job_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_all_policy_rejects_partial_extraction(self, db, processing_case, backend, fake_s3, monkeypatch):
        from caseflow.core.config import settings

        monkeypatch.setattr(settings, "CSV_EXTRACTION_POLICY", "all")
        backend.archives[CSV_URL] = make_zip({"a.csv": b"1", "b.csv": b"2"})
        fake_s3.fail_puts_for.add(f"{processing_case.creator_id}/{processing_case.id}/csv/original/b.csv")

        await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.succeeded, url=CSV_URL))

        db.refresh(processing_case)
        assert processing_case.status is CaseStatus.failed
        assert db.query(CaseCsvFile).count() == 0

    @pytest.mark.asyncio
    async def test_download_failure_fails_case(self, db, processing_case, backend):
        await job_reconciler.reconcile(
            db, payload(processing_case, "job-1", JobStatus.succeeded, url="https://results.test/gone.zip")
        )

        db.refresh(processing_case)
        assert processing_case.status is CaseStatus.failed
        failure = events_of(db, processing_case, EventType.analysis_submitted)[-1]
        assert "HTTP 404" in failure.payload["error"]


class TestResults:
    @pytest.mark.asyncio
    async def test_final_analysis_success_makes_case_ready(self, db, user):
        case = make_case(
            db, user,
            status=CaseStatus.processing,
            hitl_stage=HitlStage.final_analysis,
            active_job_id="job-2",
            review_job_id="job-1",
        )
        make_job(db, case, "job-2", task=JobTask.final_analysis)

        await job_reconciler.reconcile(
            db, payload(case, "job-2", JobStatus.succeeded, task=JobTask.final_analysis, url=RESULT_URL)
        )

        db.refresh(case)
        assert case.status is CaseStatus.ready
        assert case.hitl_stage is None
        assert case.result_zip_url == RESULT_URL
        assert case.review_job_id == "job-1"
        assert events_of(db, case, EventType.analysis_ready)[0].payload["result_zip_url"] == RESULT_URL

    @pytest.mark.asyncio
    async def test_backend_failure_marks_case_failed(self, db, user, notifications):
        case = make_case(
            db, user,
            status=CaseStatus.processing,
            hitl_stage=HitlStage.final_analysis,
            active_job_id="job-2",
        )
        make_job(db, case, "job-2", task=JobTask.final_analysis)

        await job_reconciler.reconcile(
            db,
            payload(case, "job-2", JobStatus.failed, task=JobTask.final_analysis, error="parser crashed"),
        )

        db.refresh(case)
        assert case.status is CaseStatus.failed
        event = events_of(db, case, EventType.analysis_submitted)[-1]
        assert event.payload["error"] == "parser crashed"
        assert event.payload["stage"] == "final_analysis"
        notifications.failure_notification.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_break_reconcile(self, db, processing_case, notifications):
        notifications.failure_notification.side_effect = RuntimeError("mail down")

        result = await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.failed))

        db.refresh(processing_case)
        assert result.case_status is CaseStatus.failed
        assert processing_case.status is CaseStatus.failed

    @pytest.mark.asyncio
    async def test_late_result_after_timeout(self, db, user):
        case = make_case(db, user, status=CaseStatus.timeout, active_job_id="job-3")
        make_job(db, case, "job-3", task=JobTask.parse_statements)

        await job_reconciler.reconcile(
            db, payload(case, "job-3", JobStatus.succeeded, task=JobTask.parse_statements, url=RESULT_URL)
        )

        db.refresh(case)
        assert case.status is CaseStatus.ready


class TestDeliveryOrdering:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_changes_nothing(self, db, processing_case):
        first = await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.failed))
        events_before = len(events_of(db, processing_case))

        second = await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.failed))

        assert first.outcome is DeliveryOutcome.advanced
        assert second.outcome is DeliveryOutcome.duplicate
        assert not second.case_updated
        assert len(events_of(db, processing_case)) == events_before

    @pytest.mark.asyncio
    async def test_started_after_success_does_not_regress(self, db, user):
        case = make_case(db, user, status=CaseStatus.processing, active_job_id="job-2")
        make_job(db, case, "job-2", task=JobTask.parse_statements)
        await job_reconciler.reconcile(
            db, payload(case, "job-2", JobStatus.succeeded, task=JobTask.parse_statements, url=RESULT_URL)
        )

        result = await job_reconciler.reconcile(
            db, payload(case, "job-2", JobStatus.started, task=JobTask.parse_statements)
        )

        db.refresh(case)
        assert result.outcome is DeliveryOutcome.stale
        assert case.status is CaseStatus.ready
        assert db.get(Job, "job-2").status is JobStatus.succeeded

    @pytest.mark.asyncio
    async def test_stale_job_does_not_touch_case(self, db, user):
        case = make_case(
            db, user,
            status=CaseStatus.processing,
            hitl_stage=HitlStage.initial_parse,
            active_job_id="job-new",
        )
        make_job(db, case, "job-old")
        make_job(db, case, "job-new")

        result = await job_reconciler.reconcile(db, payload(case, "job-old", JobStatus.failed))

        db.refresh(case)
        assert not result.case_updated
        assert case.status is CaseStatus.processing
        assert db.get(Job, "job-old").status is JobStatus.failed

    @pytest.mark.asyncio
    async def test_started_for_unknown_job_adopts_it(self, db, user):
        case = make_case(db, user)

        result = await job_reconciler.reconcile(
            db, payload(case, "job-ext", JobStatus.started, task=JobTask.parse_statements, input_url="https://in.zip")
        )

        db.refresh(case)
        assert result.outcome is DeliveryOutcome.new
        assert case.status is CaseStatus.processing
        assert case.active_job_id == "job-ext"
        assert db.get(Job, "job-ext").input_url == "https://in.zip"

    @pytest.mark.asyncio
    async def test_unknown_case_records_job_only(self, db, user):
        ghost = make_case(db, user)
        ghost_id = ghost.id
        db.delete(ghost)
        db.commit()

        result = await job_reconciler.reconcile(
            db,
            JobWebhookPayload(job_id="job-x", task=JobTask.initial_parse, session_id=ghost_id, status=JobStatus.failed),
        )

        assert not result.case_updated
        assert db.get(Job, "job-x").session_id == ghost_id

    @pytest.mark.asyncio
    async def test_rejected_transition_still_records_job(self, db, user):
        case = make_case(db, user, status=CaseStatus.archived, active_job_id="job-1")
        make_job(db, case, "job-1", task=JobTask.final_analysis)

        result = await job_reconciler.reconcile(
            db, payload(case, "job-1", JobStatus.succeeded, task=JobTask.final_analysis, url=RESULT_URL)
        )

        db.refresh(case)
        assert not result.case_updated
        assert case.status is CaseStatus.archived
        assert db.get(Job, "job-1").status is JobStatus.succeeded

    @pytest.mark.asyncio
    async def test_repeated_initial_parse_success_extracts_once(self, db, processing_case, backend, fake_s3):
        backend.archives[CSV_URL] = make_zip({"a.csv": b"1", "b.csv": b"2", "c.csv": b"3"})
        delivery = payload(processing_case, "job-1", JobStatus.succeeded, url=CSV_URL)

        first = await job_reconciler.reconcile(db, delivery)
        puts_after_first = list(fake_s3.puts)
        second = await job_reconciler.reconcile(db, delivery)

        db.refresh(processing_case)
        assert first.outcome is DeliveryOutcome.advanced
        assert second.outcome is DeliveryOutcome.duplicate
        assert processing_case.status is CaseStatus.review
        assert db.query(CaseCsvFile).filter(CaseCsvFile.case_id == processing_case.id).count() == 3
        assert len(events_of(db, processing_case, EventType.analysis_ready)) == 1
        assert backend.downloads == [CSV_URL]
        assert len(puts_after_first) == 3
        assert fake_s3.puts == puts_after_first


def _fail_job_lookup(monkeypatch):
    def locked_job(db, job_id):
        raise OperationalError("SELECT jobs FOR UPDATE", {}, Exception("lock wait timeout"))

    monkeypatch.setattr(JobReconciler, "_locked_job", staticmethod(locked_job))


class TestInternalErrors:
    @pytest.mark.asyncio
    async def test_error_while_waiting_fails_the_case(self, db, processing_case, monkeypatch):
        _fail_job_lookup(monkeypatch)

        with pytest.raises(OperationalError):
            await job_reconciler.reconcile(db, payload(processing_case, "job-1", JobStatus.succeeded, url=CSV_URL))

        db.refresh(processing_case)
        assert processing_case.status is CaseStatus.failed
        assert processing_case.hitl_stage is None
        event = events_of(db, processing_case, EventType.analysis_submitted)[-1]
        assert event.payload["stage"] == "reconcile"
        assert "lock wait timeout" in event.payload["error"]

    @pytest.mark.asyncio
    async def test_error_on_repeated_delivery_keeps_ready_case(self, db, user, monkeypatch):
        case = make_case(db, user, status=CaseStatus.ready, active_job_id="job-2", result_zip_url=RESULT_URL)
        make_job(db, case, "job-2", task=JobTask.parse_statements, status=JobStatus.succeeded, url=RESULT_URL)
        events_before = len(events_of(db, case))
        _fail_job_lookup(monkeypatch)

        with pytest.raises(OperationalError):
            await job_reconciler.reconcile(
                db, payload(case, "job-2", JobStatus.succeeded, task=JobTask.parse_statements, url=RESULT_URL)
            )

        db.refresh(case)
        assert case.status is CaseStatus.ready
        assert case.result_zip_url == RESULT_URL
        assert len(events_of(db, case)) == events_before

    @pytest.mark.asyncio
    async def test_error_on_repeated_delivery_keeps_review_case(self, db, user, monkeypatch):
        case = make_case(
            db, user,
            status=CaseStatus.review,
            hitl_stage=HitlStage.review,
            active_job_id="job-1",
            review_job_id="job-1",
            csv_zip_url=CSV_URL,
        )
        make_job(db, case, "job-1", status=JobStatus.succeeded, url=CSV_URL)
        for name in ("a.csv", "b.csv", "c.csv"):
            db.add(
                CaseCsvFile(
                    case_id=case.id,
                    job_id="job-1",
                    pdf_file_name=name.replace(".csv", ".pdf"),
                    csv_file_name=name,
                    original_csv_path=f"{user.id}/{case.id}/csv/original/{name}",
                )
            )
        db.commit()
        _fail_job_lookup(monkeypatch)

        with pytest.raises(OperationalError):
            await job_reconciler.reconcile(db, payload(case, "job-1", JobStatus.succeeded, url=CSV_URL))

        db.refresh(case)
        assert case.status is CaseStatus.review
        assert case.hitl_stage is HitlStage.review
        assert db.query(CaseCsvFile).filter(CaseCsvFile.case_id == case.id).count() == 3
        assert events_of(db, case, EventType.analysis_submitted) == []
