"""
Pydantic validation schemas
"""
from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from caseflow.db.models import (
    CaseFileType,
    CaseStatus,
    EventType,
    HitlStage,
    JobStatus,
    JobTask,
)

# ============================================================================
# Case Schemas
# ============================================================================

class CaseBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    color_hex: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$")

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for tag in v or []:
            tag = (tag or "").strip()
            if tag and tag not in out:
                out.append(tag)
        return out


class CaseCreate(CaseBase):
    hitl_enabled: bool = True
    org_id: Optional[str] = None


class CaseUpdate(BaseModel):
    """Metadata-only edits; lifecycle fields move through dedicated endpoints"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    color_hex: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$")
    hitl_enabled: Optional[bool] = None


class CaseResponse(CaseBase):
    id: str
    creator_id: str
    org_id: Optional[str] = None
    hitl_enabled: bool
    status: CaseStatus
    hitl_stage: Optional[HitlStage] = None
    active_job_id: Optional[str] = None
    review_job_id: Optional[str] = None
    csv_zip_url: Optional[str] = None
    result_zip_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CaseListResponse(BaseModel):
    cases: List[CaseResponse]
    total: int
    skip: int
    limit: int


# ============================================================================
# File Schemas
# ============================================================================

class CaseFileResponse(BaseModel):
    id: str
    case_id: str
    file_name: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    page_count: Optional[int] = None
    is_encrypted: bool
    file_type: CaseFileType
    uploaded_by: Optional[str] = None
    uploaded_at: datetime

    class Config:
        from_attributes = True


class UploadResult(BaseModel):
    uploaded: List[CaseFileResponse]
    skipped: List[str] = Field(default_factory=list, description="Names already present on the case")


class SignedUrlResponse(BaseModel):
    url: str
    expires_in: int


class CsvFileResponse(BaseModel):
    id: str
    case_id: str
    job_id: str
    pdf_file_name: str
    csv_file_name: str
    is_corrected: bool
    download_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ============================================================================
# Event Schemas
# ============================================================================

class EventResponse(BaseModel):
    id: str
    case_id: str
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True


class NoteCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=10000)


# ============================================================================
# Job Schemas
# ============================================================================

class JobResponse(BaseModel):
    id: str
    task: JobTask
    session_id: str
    user_id: Optional[str] = None
    status: JobStatus
    url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobWebhookPayload(BaseModel):
    """
    Callback body from the analysis backend. Both snake_case and the
    backend's camelCase spellings are accepted.
    """
    job_id: str = Field(..., min_length=1, validation_alias=AliasChoices("job_id", "jobId"))
    task: JobTask
    session_id: str = Field(..., min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))
    user_id: Optional[str] = Field(None, validation_alias=AliasChoices("user_id", "userId"))
    input_url: Optional[str] = Field(None, validation_alias=AliasChoices("input_url", "zipUrl", "inputUrl"))
    status: JobStatus
    url: Optional[str] = None
    error: Optional[str] = None
    idempotency_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("idempotency_key", "idempotencyKey")
    )


class WebhookAck(BaseModel):
    success: bool
    job: JobResponse


class SubmissionResponse(BaseModel):
    case: CaseResponse
    job: JobResponse
    uploaded: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)


class ResubmitRequest(BaseModel):
    file_names: Optional[List[str]] = Field(
        None, description="Subset of stored files to include; all uploads when omitted"
    )
    passwords: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# Admin Schemas
# ============================================================================

class ManualResultRequest(BaseModel):
    result_url: str = Field(..., min_length=1)


class SweepResponse(BaseModel):
    expired: List[str]
