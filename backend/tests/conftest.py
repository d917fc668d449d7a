"""Pytest configuration: in-memory SQLite, fake S3, mocked analysis backend and a TestClient."""

from __future__ import annotations

import io
import json
import os
import uuid
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Generator, Optional
from unittest.mock import AsyncMock

import httpx
import jwt
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from pypdf import PdfWriter
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Override env BEFORE importing caseflow modules so Settings picks up test values.
os.environ.update(
    {
        "DATABASE_URL": "sqlite://",
        "JWT_SECRET_KEY": "test-secret",
        "AWS_ACCESS_KEY_ID": "test",
        "AWS_SECRET_ACCESS_KEY": "test",
        "AWS_REGION": "us-east-1",
        "S3_BUCKET_NAME": "test-bucket",
        "BACKEND_API_URL": "http://backend.test",
        "WEBHOOK_TOKEN": "",
        "EMAIL_PROVIDER": "dev",
        "OPS_ALERT_EMAILS": "ops@example.com",
        "SUPPORT_EMAIL": "support@example.com",
        "SCHEDULER_ENABLED": "false",
        "READ_RETRY_ATTEMPTS": "3",
        "READ_RETRY_BASE_DELAY_SECONDS": "0",
        "CSV_EXTRACTION_POLICY": "at_least_one",
        "JOB_TIMEOUT_HOURS": "6",
        "DEBUG": "true",
    }
)

from caseflow.core.config import settings  # noqa: E402
from caseflow.db.database import Base, get_db  # noqa: E402
from caseflow.db.models import Case, Job, JobStatus, JobTask, User, UserRole  # noqa: E402
from caseflow.main import app  # noqa: E402
from caseflow.services.job_dispatcher import job_dispatcher  # noqa: E402
from caseflow.services.notification_service import notification_service  # noqa: E402
from caseflow.services.result_extractor import result_extractor  # noqa: E402
from caseflow.services.storage_gateway import storage_gateway  # noqa: E402

# ── In-memory SQLite engine ────────────────────────────────────────

_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)


# SQLite doesn't enforce FK by default
@event.listens_for(_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


_TestSession = sessionmaker(bind=_engine, class_=Session, autoflush=False)


@pytest.fixture(autouse=True)
def _create_tables():
    """Create all tables before each test and drop after."""
    Base.metadata.create_all(bind=_engine)
    yield
    Base.metadata.drop_all(bind=_engine)


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    """Yield a test DB session."""
    session = _TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def second_db() -> Generator[Session, None, None]:
    """A separate session, for writes that race the one under test."""
    session = _TestSession()
    try:
        yield session
    finally:
        session.close()


# ── Fake S3 ────────────────────────────────────────────────────────

class FakeS3Client:
    """Dict-backed stand-in for the boto3 S3 client calls the gateway makes."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.fail_puts_for: set[str] = set()
        self.puts: list = []

    def put_object(self, Bucket, Key, Body, ContentType=None):
        if Key in self.fail_puts_for:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "We encountered an internal error."}},
                "PutObject",
            )
        self.puts.append(Key)
        self.objects[Key] = bytes(Body)
        self.content_types[Key] = ContentType
        return {"ETag": '"fake"'}

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}},
                "GetObject",
            )
        return {"Body": io.BytesIO(self.objects[Key])}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"

    def list_objects_v2(self, Bucket, Prefix, ContinuationToken=None):
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}

    def delete_objects(self, Bucket, Delete):
        for item in Delete["Objects"]:
            self.objects.pop(item["Key"], None)
        return {}


@pytest.fixture(autouse=True)
def fake_s3(monkeypatch) -> FakeS3Client:
    fake = FakeS3Client()
    monkeypatch.setattr(storage_gateway, "s3_client", fake)
    return fake


# ── Analysis backend ───────────────────────────────────────────────

class FakeBackend:
    """
    MockTransport handler. POSTs are recorded and answered from ``responses``
    (default 202 accepted); ``on_post`` runs before the answer goes back.
    GETs serve result archives from ``archives``.
    """

    def __init__(self) -> None:
        self.requests: list = []
        self.responses: Dict[str, tuple] = {}
        self.archives: Dict[str, bytes] = {}
        self.download_failures: Dict[str, int] = {}
        self.downloads: list = []
        self.on_post: Optional[Callable[[dict], None]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            url = str(request.url)
            self.downloads.append(url)
            if self.download_failures.get(url, 0) > 0:
                self.download_failures[url] -= 1
                return httpx.Response(503, text="busy")
            if url in self.archives:
                return httpx.Response(200, content=self.archives[url])
            return httpx.Response(404, text="not found")

        body = json.loads(request.content or b"{}")
        self.requests.append({"path": request.url.path, "json": body, "headers": dict(request.headers)})
        if self.on_post is not None:
            self.on_post(body)
        status, payload = self.responses.get(request.url.path, (202, {"status": "accepted"}))
        if isinstance(payload, dict):
            return httpx.Response(status, json=payload)
        return httpx.Response(status, text=payload)


@pytest.fixture(autouse=True)
def backend(monkeypatch) -> FakeBackend:
    fake = FakeBackend()
    transport = httpx.MockTransport(fake.handler)
    monkeypatch.setattr(job_dispatcher, "transport", transport)
    monkeypatch.setattr(result_extractor, "transport", transport)
    return fake


@pytest.fixture(autouse=True)
def notifications(monkeypatch):
    """Capture operator notifications instead of sending them."""
    failure = AsyncMock(return_value={"provider": "test", "sent": True})
    ticket = AsyncMock(return_value={"provider": "test", "sent": True, "ticket_id": "TKT-TEST"})
    monkeypatch.setattr(notification_service, "send_failure_notification", failure)
    monkeypatch.setattr(notification_service, "send_support_ticket", ticket)

    class _Captured:
        failure_notification = failure
        support_ticket = ticket

    return _Captured


# ── App client ─────────────────────────────────────────────────────

@pytest.fixture()
def client(db: Session) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the in-memory DB."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc
    app.dependency_overrides.clear()


# ── Users & auth ───────────────────────────────────────────────────

def _make_user(db: Session, email: str, role: UserRole = UserRole.member) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        full_name=email.split("@")[0].title(),
        organization_name="Acme Forensics",
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture()
def user(db: Session) -> User:
    return _make_user(db, "analyst@example.com")


@pytest.fixture()
def other_user(db: Session) -> User:
    return _make_user(db, "someone@example.com")


@pytest.fixture()
def admin_user(db: Session) -> User:
    return _make_user(db, "admin@example.com", UserRole.admin)


def token_for(user_id: str, expires_in: int = 3600) -> str:
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture()
def auth_headers() -> Callable[[User], dict]:
    def _headers(u: User) -> dict:
        return {"Authorization": f"Bearer {token_for(u.id)}"}
    return _headers


# ── Builders ───────────────────────────────────────────────────────

def make_case(db: Session, owner: User, **overrides) -> Case:
    overrides.setdefault("name", "Acme v. Doe")
    case = Case(creator_id=owner.id, **overrides)
    db.add(case)
    db.commit()
    db.refresh(case)
    return case


def make_job(
    db: Session,
    case: Case,
    job_id: Optional[str] = None,
    task: JobTask = JobTask.initial_parse,
    status: JobStatus = JobStatus.started,
    **overrides,
) -> Job:
    job = Job(
        id=job_id or str(uuid.uuid4()),
        task=task,
        session_id=case.id,
        user_id=case.creator_id,
        status=status,
        **overrides,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def make_pdf(pages: int = 1, password: Optional[str] = None) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    if password:
        writer.encrypt(password)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def read_zip(blob: bytes) -> Dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(blob)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist() if not info.is_dir()}
