"""
Case workflows that sit between the HTTP layer and the orchestration core:
CRUD, file upload with de-duplication, archive submission, CSV review and
final-analysis bundling.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from fastapi import UploadFile
from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.core.logger import logger
from caseflow.db.models import (
    Case,
    CaseCsvFile,
    CaseDocument,
    CaseFileType,
    CaseStatus,
    Event,
    EventType,
    Job,
    JobTask,
    User,
)
from caseflow.db.schemas import CaseCreate, CaseUpdate
from caseflow.services.archive_builder import ArchiveEntry, build_archive, read_sources
from caseflow.services.audit_service import audit_service
from caseflow.services.case_state_machine import (
    Archive,
    ManualResult,
    Restore,
    Submit,
    apply_to_case,
    apply_transition,
    state_of,
)
from caseflow.services.job_dispatcher import JobDispatcher, job_dispatcher
from caseflow.services.pdf_inspector import InvalidPdfError, inspect_pdf
from caseflow.services.storage_gateway import StorageGateway, storage_gateway
from caseflow.utils.exceptions import (
    CaseBusyError,
    CaseFileNotFoundError,
    CaseNotFoundError,
    InvalidUploadError,
    TransitionRejected,
    UnauthorizedError,
)
from caseflow.utils.helpers import is_pdf, sanitize_file_name


class CaseService:
    def __init__(
        self,
        storage: Optional[StorageGateway] = None,
        dispatcher: Optional[JobDispatcher] = None,
    ) -> None:
        self.storage = storage or storage_gateway
        self.dispatcher = dispatcher or job_dispatcher

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_case(self, db: Session, user: User, data: CaseCreate) -> Case:
        case = Case(
            creator_id=user.id,
            org_id=data.org_id,
            name=data.name.strip(),
            description=data.description,
            tags=data.tags,
            color_hex=data.color_hex,
            hitl_enabled=data.hitl_enabled,
            status=CaseStatus.active,
        )
        db.add(case)
        db.flush()
        audit_service.record(db, case.id, EventType.created, {"name": case.name, "by": user.id})
        db.commit()
        db.refresh(case)
        logger.info("Case %s created by %s", case.id, user.id)
        return case

    def get_case_for_user(self, db: Session, case_id: str, user: User) -> Case:
        case = db.query(Case).filter(Case.id == case_id).first()
        if not case:
            raise CaseNotFoundError(case_id)
        if case.creator_id != user.id:
            raise UnauthorizedError()
        return case

    def list_cases(
        self,
        db: Session,
        user: Optional[User],
        status: Optional[CaseStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Case], int]:
        """Cases of ``user``, or of everyone when ``user`` is None (admin listing)."""
        query = db.query(Case)
        if user is not None:
            query = query.filter(Case.creator_id == user.id)
        if status is not None:
            query = query.filter(Case.status == status)
        total = query.count()
        cases = query.order_by(Case.updated_at.desc()).offset(skip).limit(limit).all()
        return cases, total

    def update_case(self, db: Session, case: Case, data: CaseUpdate) -> Case:
        changes = data.model_dump(exclude_unset=True)
        if "tags" in changes and changes["tags"] is not None:
            changes["tags"] = [t.strip() for t in changes["tags"] if t and t.strip()]
        for field, value in changes.items():
            if field == "name" and value is not None:
                value = value.strip()
            setattr(case, field, value)
        db.commit()
        db.refresh(case)
        return case

    async def delete_case(self, db: Session, case: Case) -> None:
        """
        Delete the case row (cascading files, CSV rows and events) and remove
        its stored objects. Job rows are kept. Storage cleanup is best-effort.
        """
        owner_id, case_id = case.creator_id, case.id
        db.delete(case)
        db.commit()
        logger.info("Case %s deleted", case_id)

        for prefix in (
            self.storage.case_prefix(owner_id, case_id),
            self.storage.input_archive_prefix(owner_id, case_id),
        ):
            try:
                await asyncio.to_thread(self.storage.delete_prefix, prefix)
            except Exception:
                logger.exception("Storage cleanup failed for %s", prefix)

    def archive_case(self, db: Session, case: Case) -> Case:
        apply_to_case(case, Archive())
        db.commit()
        db.refresh(case)
        return case

    def restore_case(self, db: Session, case: Case) -> Case:
        apply_to_case(case, Restore())
        db.commit()
        db.refresh(case)
        return case

    def add_note(self, db: Session, case: Case, user: User, text: str) -> Event:
        event = audit_service.record(db, case.id, EventType.note_added, {"text": text.strip(), "by": user.id})
        db.commit()
        db.refresh(event)
        return event

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def list_files(self, db: Session, case: Case) -> List[CaseDocument]:
        return (
            db.query(CaseDocument)
            .filter(CaseDocument.case_id == case.id)
            .order_by(CaseDocument.uploaded_at.asc())
            .all()
        )

    def get_file(self, db: Session, case: Case, file_id: str) -> CaseDocument:
        row = (
            db.query(CaseDocument)
            .filter(CaseDocument.case_id == case.id, CaseDocument.id == file_id)
            .first()
        )
        if not row:
            raise CaseFileNotFoundError(file_id)
        return row

    def preview_url(self, row: CaseDocument) -> str:
        return self.storage.signed_url(row.storage_path, settings.PREVIEW_URL_TTL_SECONDS)

    async def upload_files(
        self,
        db: Session,
        case: Case,
        user: User,
        uploads: Sequence[UploadFile],
        passwords: Optional[Mapping[str, str]] = None,
    ) -> Tuple[List[CaseDocument], List[str]]:
        entries = await read_sources(uploads)
        _dedupe_batch(entries)
        content_types = _content_types(uploads, entries)
        return await self.store_files(db, case, user, entries, content_types, _normalize_passwords(passwords))

    async def store_files(
        self,
        db: Session,
        case: Case,
        user: User,
        entries: Sequence[ArchiveEntry],
        content_types: Mapping[str, str],
        passwords: Mapping[str, str],
    ) -> Tuple[List[CaseDocument], List[str]]:
        """
        Persist a batch read by ``read_sources``. Names already on the case, or
        repeated within the batch, are skipped: no second row, no overwrite.
        Every PDF is checked before anything is stored.
        """
        if case.status is CaseStatus.archived:
            raise TransitionRejected(case.status.value, "UploadFiles", "case is archived")

        existing = {
            name for (name,) in db.query(CaseDocument.file_name).filter(CaseDocument.case_id == case.id).all()
        }
        fresh: List[ArchiveEntry] = []
        skipped: List[str] = []
        for name, data in entries:
            if name in existing:
                skipped.append(name)
                continue
            existing.add(name)
            fresh.append((name, data))

        inspected: Dict[str, tuple] = {}
        for name, data in fresh:
            if not is_pdf(name, content_types.get(name, "")):
                inspected[name] = (None, False)
                continue
            try:
                info = inspect_pdf(data, passwords.get(name))
            except InvalidPdfError as exc:
                raise InvalidUploadError(f"{name}: {exc}") from exc
            if info.needs_password and not info.password_ok:
                raise InvalidUploadError(f"{name} is password protected; a valid password is required")
            inspected[name] = (info.page_count, info.is_encrypted)

        created: List[CaseDocument] = []
        for name, data in fresh:
            path = self.storage.original_path(case.creator_id, case.id, name)
            content_type = content_types.get(name) or "application/octet-stream"
            await asyncio.to_thread(self.storage.put, path, data, content_type)
            page_count, is_encrypted = inspected[name]
            row = CaseDocument(
                case_id=case.id,
                file_name=name,
                storage_path=path,
                content_type=content_type,
                size_bytes=len(data),
                page_count=page_count,
                is_encrypted=is_encrypted,
                file_type=CaseFileType.upload,
                uploaded_by=user.id,
            )
            db.add(row)
            created.append(row)

        if created:
            audit_service.record(
                db, case.id, EventType.files_uploaded,
                {"files": [row.file_name for row in created], "skipped": skipped, "by": user.id},
            )
        db.commit()
        for row in created:
            db.refresh(row)

        if skipped:
            logger.info("Case %s upload skipped existing files: %s", case.id, skipped)
        return created, skipped

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def initial_task(self, case: Case) -> JobTask:
        return JobTask.initial_parse if case.hitl_enabled else JobTask.parse_statements

    def ensure_can_submit(self, case: Case, task: JobTask) -> None:
        if case.status is CaseStatus.processing:
            raise CaseBusyError(case.id, "Submit")
        apply_transition(state_of(case), Submit(task))

    async def submit_uploads(
        self,
        db: Session,
        case: Case,
        user: User,
        uploads: Sequence[UploadFile],
        passwords: Optional[Mapping[str, str]] = None,
    ) -> Tuple[Job, List[str], List[str]]:
        """
        Store the batch, archive the same in-memory bytes and dispatch.
        Returns (job, uploaded names, skipped names).
        """
        task = self.initial_task(case)
        self.ensure_can_submit(case, task)

        entries = await read_sources(uploads)
        batch = _dedupe_batch(entries)
        normalized = _normalize_passwords(passwords)
        created, skipped = await self.store_files(
            db, case, user, entries, _content_types(uploads, entries), normalized
        )

        names = {name for name, _ in batch}
        archive = build_archive(batch, {name: pw for name, pw in normalized.items() if name in names})
        job = await self._dispatch_archive(db, case, task, archive)
        return job, [row.file_name for row in created], skipped

    async def resubmit_stored(
        self,
        db: Session,
        case: Case,
        user: User,
        file_names: Optional[Iterable[str]] = None,
        passwords: Optional[Mapping[str, str]] = None,
    ) -> Job:
        """Rebuild the input archive from files already stored on the case."""
        task = self.initial_task(case)
        self.ensure_can_submit(case, task)

        rows = [row for row in self.list_files(db, case) if row.file_type is CaseFileType.upload]
        if file_names is not None:
            wanted = [sanitize_file_name(name) for name in file_names]
            by_name = {row.file_name: row for row in rows}
            missing = [name for name in wanted if name not in by_name]
            if missing:
                raise InvalidUploadError(f"Unknown files: {', '.join(missing)}")
            rows = [by_name[name] for name in dict.fromkeys(wanted)]
        if not rows:
            raise InvalidUploadError("No stored files to submit")

        entries: List[ArchiveEntry] = []
        for row in rows:
            entries.append((row.file_name, await asyncio.to_thread(self.storage.get, row.storage_path)))

        normalized = _normalize_passwords(passwords)
        names = {row.file_name for row in rows}
        archive = build_archive(entries, {name: pw for name, pw in normalized.items() if name in names})
        return await self._dispatch_archive(db, case, task, archive)

    async def submit_final_analysis(self, db: Session, case: Case, user: User) -> Job:
        """
        Bundle the review set (corrected CSV where present, else the original)
        and dispatch final-analysis.
        """
        self.ensure_can_submit(case, JobTask.final_analysis)

        rows = self.review_set(db, case)
        if not rows:
            raise InvalidUploadError("No CSV files to analyse")

        entries: List[ArchiveEntry] = []
        for row in rows:
            entries.append((row.csv_file_name, await asyncio.to_thread(self.storage.get, row.effective_csv_path)))

        logger.info(
            "Case %s final analysis bundle: %s files (%s corrected)",
            case.id, len(rows), sum(1 for row in rows if row.is_corrected),
        )
        archive = build_archive(entries)
        return await self._dispatch_archive(db, case, JobTask.final_analysis, archive)

    async def _dispatch_archive(self, db: Session, case: Case, task: JobTask, archive: bytes) -> Job:
        owner = case.creator
        path = self.storage.input_archive_path(owner.id, case.id)
        await asyncio.to_thread(self.storage.put, path, archive, "application/zip")
        url = await asyncio.to_thread(self.storage.signed_url, path, settings.INPUT_ARCHIVE_URL_TTL_SECONDS)
        return await self.dispatcher.submit(db, case, task, url, owner, archive_path=path)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def review_set(self, db: Session, case: Case) -> List[CaseCsvFile]:
        if not case.review_job_id:
            return []
        return (
            db.query(CaseCsvFile)
            .filter(CaseCsvFile.case_id == case.id, CaseCsvFile.job_id == case.review_job_id)
            .order_by(CaseCsvFile.pdf_file_name.asc())
            .all()
        )

    def csv_download_url(self, row: CaseCsvFile) -> str:
        return self.storage.signed_url(row.effective_csv_path, settings.CSV_URL_TTL_SECONDS)

    async def upload_corrected_csv(self, db: Session, case: Case, csv_id: str, data: bytes) -> CaseCsvFile:
        if case.status is not CaseStatus.review:
            raise TransitionRejected(case.status.value, "CorrectCsv", "corrections are accepted during review only")
        if not data:
            raise InvalidUploadError("Corrected CSV is empty")

        row = (
            db.query(CaseCsvFile)
            .filter(
                CaseCsvFile.id == csv_id,
                CaseCsvFile.case_id == case.id,
                CaseCsvFile.job_id == case.review_job_id,
            )
            .first()
        )
        if not row:
            raise CaseFileNotFoundError(csv_id)

        path = self.storage.csv_path(case.creator_id, case.id, row.csv_file_name, corrected=True)
        await asyncio.to_thread(self.storage.put, path, data, "text/csv")
        row.corrected_csv_path = path
        row.is_corrected = True
        db.commit()
        db.refresh(row)
        logger.info("Case %s CSV %s corrected", case.id, row.csv_file_name)
        return row

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def set_manual_result(self, db: Session, case: Case, result_url: str, admin: User) -> Case:
        previous = case.status
        apply_to_case(case, ManualResult())
        case.result_zip_url = result_url
        audit_service.record(
            db, case.id, EventType.analysis_ready,
            {
                "result_zip_url": result_url,
                "manual": True,
                "by": admin.id,
                "from_status": previous.value,
                "to_status": case.status.value,
            },
        )
        db.commit()
        db.refresh(case)
        logger.info("Case %s result set manually by %s", case.id, admin.id)
        return case


def _content_types(uploads: Sequence[UploadFile], entries: Sequence[ArchiveEntry]) -> Dict[str, str]:
    # keyed by the names read_sources assigned, in upload order
    return {name: (u.content_type or "") for u, (name, _) in zip(uploads, entries)}


def _normalize_passwords(passwords: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {sanitize_file_name(name): pw for name, pw in (passwords or {}).items() if name and pw}


def _dedupe_batch(entries: Sequence[ArchiveEntry]) -> List[ArchiveEntry]:
    """
    Drop byte-identical repeats. Different files that map to the same
    storage name reject the batch.
    """
    seen: Dict[str, bytes] = {}
    out: List[ArchiveEntry] = []
    for name, data in entries:
        if name in seen:
            if seen[name] != data:
                raise InvalidUploadError(f"Several different files would be stored as {name}; rename them")
            continue
        seen[name] = data
        out.append((name, data))
    return out


case_service = CaseService()
