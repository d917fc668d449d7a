"""
Analysis backend callback.

POST /job-webhook   (mounted at the application root)
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from caseflow.api.v1.deps import verify_webhook_token
from caseflow.core.logger import logger
from caseflow.db.database import get_db
from caseflow.db.schemas import JobResponse, JobWebhookPayload, WebhookAck
from caseflow.services.job_reconciler import job_reconciler

router = APIRouter()


@router.post(
    "/job-webhook",
    response_model=WebhookAck,
    dependencies=[Depends(verify_webhook_token)],
    summary="Job status callback from the analysis backend",
)
async def job_webhook(
    payload: JobWebhookPayload,
    db: Session = Depends(get_db),
):
    try:
        result = await job_reconciler.reconcile(db, payload)
    except Exception as exc:
        logger.error("Webhook for job %s failed: %s", payload.job_id, exc)
        return JSONResponse({"error": str(exc)}, status_code=500)

    return WebhookAck(success=True, job=JobResponse.model_validate(result.job))
