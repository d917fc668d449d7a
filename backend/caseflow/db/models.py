"""
SQLAlchemy ORM Models
"""

from __future__ import annotations

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy import Index

from caseflow.db.database import Base
from caseflow.utils.helpers import new_id, utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# ============================================================================
# Enums
# ============================================================================

class UserRole(str, enum.Enum):
    """User roles"""
    member = "member"
    admin = "admin"

class CaseStatus(str, enum.Enum):
    """Case lifecycle status"""
    active = "Active"
    processing = "Processing"
    review = "Review"
    ready = "Ready"
    archived = "Archived"
    failed = "Failed"
    timeout = "Timeout"

class HitlStage(str, enum.Enum):
    """Sub-state of the human-in-the-loop flow"""
    initial_parse = "initial_parse"
    review = "review"
    final_analysis = "final_analysis"

class JobTask(str, enum.Enum):
    """Work requested from the analysis backend"""
    initial_parse = "initial-parse"
    final_analysis = "final-analysis"
    parse_statements = "parse-statements"

class JobStatus(str, enum.Enum):
    """Job status as reported by the analysis backend"""
    started = "STARTED"
    succeeded = "SUCCEEDED"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.started

class CaseFileType(str, enum.Enum):
    upload = "upload"
    result = "result"

class EventType(str, enum.Enum):
    """Case audit events"""
    created = "created"
    files_uploaded = "files_uploaded"
    analysis_submitted = "analysis_submitted"
    analysis_ready = "analysis_ready"
    note_added = "note_added"


# ============================================================================
# Models
# ============================================================================

class User(Base):
    """Account that owns cases. Identity comes from the JWT subject."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)
    organization_name = Column(String(255), nullable=True)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.member)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    cases = relationship("Case", back_populates="creator", cascade="all, delete-orphan")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


class Case(Base):
    """Unit of work grouping uploaded statements, jobs, and results"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=new_id)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    org_id = Column(String(64), nullable=True, index=True)

    # Metadata
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSONType, nullable=False, default=list)
    color_hex = Column(String(9), nullable=True)

    # Workflow
    hitl_enabled = Column(Boolean, nullable=False, default=True)
    status = Column(SQLEnum(CaseStatus), nullable=False, default=CaseStatus.active, index=True)
    hitl_stage = Column(SQLEnum(HitlStage), nullable=True)
    active_job_id = Column(String(64), nullable=True)
    review_job_id = Column(String(64), nullable=True)

    # Artifacts
    input_zip_path = Column(Text, nullable=True)
    csv_zip_url = Column(Text, nullable=True)
    result_zip_url = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    creator = relationship("User", back_populates="cases")
    files = relationship("CaseDocument", back_populates="case", cascade="all, delete-orphan")
    csv_files = relationship("CaseCsvFile", back_populates="case", cascade="all, delete-orphan")
    events = relationship(
        "Event",
        back_populates="case",
        cascade="all, delete-orphan",
        order_by="Event.created_at",
    )


class Job(Base):
    """
    One unit of backend work. Keyed by a caller-generated id so repeated
    webhook deliveries upsert the same row. session_id is the owning case id;
    it is deliberately not a foreign key so job rows survive case deletion.
    """
    __tablename__ = "jobs"

    id = Column(String(64), primary_key=True)
    task = Column(SQLEnum(JobTask), nullable=False)
    session_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    input_url = Column(Text, nullable=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.started)
    url = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    idempotency_key = Column(String(255), nullable=True)

    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)


class CaseDocument(Base):
    """Uploaded statement (or attached result) stored under the case prefix"""
    __tablename__ = "case_files"

    id = Column(String(36), primary_key=True, default=new_id)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)

    file_name = Column(String(255), nullable=False)
    storage_path = Column(Text, nullable=False)
    content_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=True)
    page_count = Column(Integer, nullable=True)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    file_type = Column(SQLEnum(CaseFileType), nullable=False, default=CaseFileType.upload)
    uploaded_by = Column(String(36), nullable=True)
    uploaded_at = Column(TIMESTAMP, nullable=False, default=utcnow)

    case = relationship("Case", back_populates="files")

    __table_args__ = (
        UniqueConstraint("case_id", "file_name", name="uq_case_files_case_name"),
    )


class CaseCsvFile(Base):
    """
    Per-statement CSV produced by an initial-parse job. When is_corrected is
    set the corrected path is authoritative; the original is kept.
    """
    __tablename__ = "case_csv_files"

    id = Column(String(36), primary_key=True, default=new_id)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String(64), nullable=False, index=True)

    pdf_file_name = Column(String(255), nullable=False)
    csv_file_name = Column(String(255), nullable=False)
    original_csv_path = Column(Text, nullable=False)
    corrected_csv_path = Column(Text, nullable=True)
    is_corrected = Column(Boolean, nullable=False, default=False)

    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    case = relationship("Case", back_populates="csv_files")

    __table_args__ = (
        UniqueConstraint("job_id", "csv_file_name", name="uq_case_csv_files_job_name"),
    )

    @property
    def effective_csv_path(self) -> str:
        if self.is_corrected and self.corrected_csv_path:
            return self.corrected_csv_path
        return self.original_csv_path


class Event(Base):
    """Append-only audit trail for a case"""
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    type = Column(SQLEnum(EventType), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)

    case = relationship("Case", back_populates="events")

    __table_args__ = (
        Index("ix_events_case_created", "case_id", "created_at"),
    )


class IdempotencyRecord(Base):
    """
    Stores the result of a side-effecting request keyed by (user_id, idempotency_key).
    If the same key is received again within the TTL, the cached response is returned
    instead of re-executing the operation.
    """
    __tablename__ = "idempotency_records"

    id             = Column(String(36), primary_key=True, default=new_id)
    idempotency_key = Column(String(255), nullable=False)
    user_id        = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint       = Column(String(255), nullable=True)   # e.g. "POST /api/v1/cases/{id}/submit"
    status_code    = Column(Integer, nullable=False, default=200)
    response_body  = Column(JSONType, nullable=False, default=dict)
    created_at     = Column(TIMESTAMP, nullable=False, default=utcnow)
    expires_at     = Column(TIMESTAMP, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", "user_id", name="uq_idempotency_key_user"),
    )
