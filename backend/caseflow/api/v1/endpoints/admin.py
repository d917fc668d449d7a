"""
Admin endpoints

GET  /admin/cases                  → all cases
POST /admin/cases/{id}/result      → attach a result URL manually (case → Ready)
POST /admin/timeout-sweep          → run the timeout watchdog now
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from caseflow.api.v1.deps import require_admin
from caseflow.db.database import get_db
from caseflow.db.models import Case, CaseStatus, User
from caseflow.db.schemas import CaseListResponse, CaseResponse, ManualResultRequest, SweepResponse
from caseflow.services.case_service import case_service
from caseflow.services.watchdog import sweep_stale_cases
from caseflow.utils.exceptions import CaseNotFoundError

router = APIRouter()


@router.get("/cases", response_model=CaseListResponse)
def admin_list_cases(
    status_filter: Optional[CaseStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    cases, total = case_service.list_cases(db, None, status_filter, skip, limit)
    return CaseListResponse(
        cases=[CaseResponse.model_validate(c) for c in cases],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("/cases/{case_id}/result", response_model=CaseResponse)
def admin_set_result(
    case_id: str,
    data: ManualResultRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    case = db.query(Case).filter(Case.id == case_id).first()
    if not case:
        raise CaseNotFoundError(case_id)
    return case_service.set_manual_result(db, case, data.result_url.strip(), admin)


@router.post("/timeout-sweep", response_model=SweepResponse)
async def admin_timeout_sweep(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return SweepResponse(expired=await sweep_stale_cases(db))
