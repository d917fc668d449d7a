"""
Case management endpoints

POST   /cases                                   → create case
GET    /cases                                   → list own cases
GET    /cases/{id}                              → case detail
PATCH  /cases/{id}                              → edit metadata
DELETE /cases/{id}                              → delete case + stored objects
POST   /cases/{id}/archive | /restore           → archive / restore
GET    /cases/{id}/events                       → audit trail
POST   /cases/{id}/notes                        → add note
GET    /cases/{id}/files                        → uploaded files
POST   /cases/{id}/files                        → upload files (de-duplicated)
GET    /cases/{id}/files/{file_id}/url          → preview URL
POST   /cases/{id}/submit                       → upload + archive + dispatch
POST   /cases/{id}/resubmit                     → re-dispatch stored files
GET    /cases/{id}/csv-files                    → review set
PUT    /cases/{id}/csv-files/{csv_id}/corrected → upload corrected CSV
POST   /cases/{id}/final-analysis               → bundle review set + dispatch
GET    /cases/{id}/result                       → result archive URL
"""
import json
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from caseflow.api.v1.deps import get_current_user
from caseflow.core.config import settings
from caseflow.core.logger import logger
from caseflow.db.database import get_db
from caseflow.db.models import CaseStatus, User
from caseflow.db.schemas import (
    CaseCreate,
    CaseFileResponse,
    CaseListResponse,
    CaseResponse,
    CaseUpdate,
    CsvFileResponse,
    EventResponse,
    JobResponse,
    NoteCreate,
    ResubmitRequest,
    SignedUrlResponse,
    SubmissionResponse,
    UploadResult,
)
from caseflow.services.audit_service import audit_service
from caseflow.services.case_service import case_service
from caseflow.services.idempotency_service import remember, replay
from caseflow.utils.exceptions import InvalidUploadError

router = APIRouter()


def _parse_passwords(raw: Optional[str]) -> Dict[str, str]:
    """``passwords`` form field: JSON object of file name → password."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidUploadError("passwords must be a JSON object")
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise InvalidUploadError("passwords must map file names to strings")
    return value


def _submission_body(db: Session, case, job, uploaded=None, skipped=None) -> dict:
    db.refresh(case)
    db.refresh(job)
    return jsonable_encoder(
        SubmissionResponse(
            case=CaseResponse.model_validate(case),
            job=JobResponse.model_validate(job),
            uploaded=uploaded or [],
            skipped=skipped or [],
        )
    )


# ============================================================================
# CRUD
# ============================================================================

@router.post("", response_model=CaseResponse, status_code=status.HTTP_201_CREATED)
def create_case(
    data: CaseCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return case_service.create_case(db, current_user, data)


@router.get("", response_model=CaseListResponse)
def list_cases(
    status_filter: Optional[CaseStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    cases, total = case_service.list_cases(db, current_user, status_filter, skip, limit)
    return CaseListResponse(
        cases=[CaseResponse.model_validate(c) for c in cases],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{case_id}", response_model=CaseResponse)
def get_case(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return case_service.get_case_for_user(db, case_id, current_user)


@router.patch("/{case_id}", response_model=CaseResponse)
def update_case(
    case_id: str,
    data: CaseUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return case_service.update_case(db, case, data)


@router.delete("/{case_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_case(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    await case_service.delete_case(db, case)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{case_id}/archive", response_model=CaseResponse)
def archive_case(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return case_service.archive_case(db, case)


@router.post("/{case_id}/restore", response_model=CaseResponse)
def restore_case(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return case_service.restore_case(db, case)


# ============================================================================
# Events & notes
# ============================================================================

@router.get("/{case_id}/events", response_model=List[EventResponse])
def list_events(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return audit_service.list_for_case(db, case.id)


@router.post("/{case_id}/notes", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def add_note(
    case_id: str,
    data: NoteCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return case_service.add_note(db, case, current_user, data.text)


# ============================================================================
# Files
# ============================================================================

@router.get("/{case_id}/files", response_model=List[CaseFileResponse])
def list_files(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    return case_service.list_files(db, case)


@router.post("/{case_id}/files", response_model=UploadResult, status_code=status.HTTP_201_CREATED)
async def upload_files(
    case_id: str,
    files: List[UploadFile] = File(...),
    passwords: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    created, skipped = await case_service.upload_files(db, case, current_user, files, _parse_passwords(passwords))
    return UploadResult(
        uploaded=[CaseFileResponse.model_validate(row) for row in created],
        skipped=skipped,
    )


@router.get("/{case_id}/files/{file_id}/url", response_model=SignedUrlResponse)
def file_preview_url(
    case_id: str,
    file_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    row = case_service.get_file(db, case, file_id)
    return SignedUrlResponse(url=case_service.preview_url(row), expires_in=settings.PREVIEW_URL_TTL_SECONDS)


# ============================================================================
# Submission
# ============================================================================

@router.post("/{case_id}/submit", status_code=status.HTTP_202_ACCEPTED, response_model=SubmissionResponse)
async def submit_case(
    case_id: str,
    files: List[UploadFile] = File(...),
    passwords: Optional[str] = Form(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Upload the batch, build the input archive from the same bytes and
    dispatch initial-parse (review enabled) or parse-statements.
    """
    endpoint = f"POST /cases/{case_id}/submit"
    cached = replay(idempotency_key, current_user.id, endpoint, db)
    if cached:
        status_code, body = cached
        return JSONResponse(body, status_code=status_code)

    case = case_service.get_case_for_user(db, case_id, current_user)
    job, uploaded, skipped = await case_service.submit_uploads(
        db, case, current_user, files, _parse_passwords(passwords)
    )
    body = _submission_body(db, case, job, uploaded, skipped)
    remember(idempotency_key, current_user.id, endpoint, status.HTTP_202_ACCEPTED, body, db)
    logger.info("Case %s submitted as job %s", case_id, job.id)
    return JSONResponse(body, status_code=status.HTTP_202_ACCEPTED)


@router.post("/{case_id}/resubmit", status_code=status.HTTP_202_ACCEPTED, response_model=SubmissionResponse)
async def resubmit_case(
    case_id: str,
    data: Optional[ResubmitRequest] = None,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    endpoint = f"POST /cases/{case_id}/resubmit"
    cached = replay(idempotency_key, current_user.id, endpoint, db)
    if cached:
        status_code, body = cached
        return JSONResponse(body, status_code=status_code)

    data = data or ResubmitRequest()
    case = case_service.get_case_for_user(db, case_id, current_user)
    job = await case_service.resubmit_stored(db, case, current_user, data.file_names, data.passwords)
    body = _submission_body(db, case, job)
    remember(idempotency_key, current_user.id, endpoint, status.HTTP_202_ACCEPTED, body, db)
    return JSONResponse(body, status_code=status.HTTP_202_ACCEPTED)


# ============================================================================
# Review
# ============================================================================

@router.get("/{case_id}/csv-files", response_model=List[CsvFileResponse])
def list_csv_files(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    out = []
    for row in case_service.review_set(db, case):
        item = CsvFileResponse.model_validate(row)
        item.download_url = case_service.csv_download_url(row)
        out.append(item)
    return out


@router.put("/{case_id}/csv-files/{csv_id}/corrected", response_model=CsvFileResponse)
async def upload_corrected_csv(
    case_id: str,
    csv_id: str,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    data = await file.read()
    row = await case_service.upload_corrected_csv(db, case, csv_id, data)
    item = CsvFileResponse.model_validate(row)
    item.download_url = case_service.csv_download_url(row)
    return item


@router.post("/{case_id}/final-analysis", status_code=status.HTTP_202_ACCEPTED, response_model=SubmissionResponse)
async def submit_final_analysis(
    case_id: str,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    endpoint = f"POST /cases/{case_id}/final-analysis"
    cached = replay(idempotency_key, current_user.id, endpoint, db)
    if cached:
        status_code, body = cached
        return JSONResponse(body, status_code=status_code)

    case = case_service.get_case_for_user(db, case_id, current_user)
    job = await case_service.submit_final_analysis(db, case, current_user)
    body = _submission_body(db, case, job)
    remember(idempotency_key, current_user.id, endpoint, status.HTTP_202_ACCEPTED, body, db)
    return JSONResponse(body, status_code=status.HTTP_202_ACCEPTED)


@router.get("/{case_id}/result")
def get_result(
    case_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    case = case_service.get_case_for_user(db, case_id, current_user)
    if case.status is not CaseStatus.ready or not case.result_zip_url:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Results not available (status={case.status.value})"
        )
    return {"case_id": case.id, "status": case.status.value, "result_zip_url": case.result_zip_url}
