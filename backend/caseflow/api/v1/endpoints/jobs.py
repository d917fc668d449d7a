"""
Job status polling.

GET /jobs/{job_id} → job row + owning case status. Polling also applies the
timeout watchdog to the owning case.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from caseflow.api.v1.deps import get_current_user
from caseflow.db.database import get_db
from caseflow.db.models import Case, CaseStatus, HitlStage, Job, User
from caseflow.db.schemas import JobResponse
from caseflow.services.watchdog import expire_if_stale
from caseflow.utils.exceptions import JobNotFoundError, UnauthorizedError

router = APIRouter()


class JobStatusResponse(BaseModel):
    job: JobResponse
    case_status: Optional[CaseStatus] = None
    hitl_stage: Optional[HitlStage] = None


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> JobStatusResponse:
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        raise JobNotFoundError(job_id)

    case = db.query(Case).filter(Case.id == job.session_id).first()
    owner_id = case.creator_id if case else job.user_id
    if owner_id != current_user.id:
        raise UnauthorizedError()

    if case is not None and case.active_job_id == job.id:
        await expire_if_stale(db, case)
        db.refresh(case)

    return JobStatusResponse(
        job=JobResponse.model_validate(job),
        case_status=case.status if case else None,
        hitl_stage=case.hitl_stage if case else None,
    )
