"""
FastAPI application entry point
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caseflow.core.config import settings
from caseflow.core.logger import logger
from caseflow.api.v1.api import api_router
from caseflow.api.v1.endpoints import webhooks
from caseflow.db.database import init_db
from caseflow.middleware.correlation import CorrelationMiddleware
from caseflow.services.background_jobs import shutdown_scheduler, start_scheduler
from caseflow.utils.exceptions import (
    ArchiveBuildError,
    DispatchError,
    ExtractionError,
    StorageError,
    TransitionRejected,
)

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(api_router, prefix="/api/v1")
app.include_router(webhooks.router, tags=["Webhooks"])

# ── Correlation ID middleware (must be added before CORS) ─────────────────────
app.add_middleware(CorrelationMiddleware)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)


# ── Domain errors → HTTP ──────────────────────────────────────────────────────

@app.exception_handler(TransitionRejected)
async def transition_rejected_handler(request: Request, exc: TransitionRejected):
    logger.info("Rejected %s on %s: %s", exc.trigger, request.url.path, exc)
    return JSONResponse({"detail": str(exc), "status": exc.status}, status_code=409)


@app.exception_handler(ArchiveBuildError)
async def archive_build_error_handler(request: Request, exc: ArchiveBuildError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(
        {"detail": str(exc), "backend_status": exc.status_code, "backend_body": exc.body[:2000]},
        status_code=502,
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    return JSONResponse({"detail": f"Storage error: {exc}"}, status_code=502)


@app.exception_handler(ExtractionError)
async def extraction_error_handler(request: Request, exc: ExtractionError):
    return JSONResponse({"detail": str(exc)}, status_code=502)


@app.get("/")
def read_root():
    return {"message": "Caseflow API is running", "version": "1.0.0", "docs": "/docs"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


@app.on_event("startup")
async def on_startup() -> None:
    if settings.DEBUG:
        init_db()
    start_scheduler()
    logger.info("%s started", settings.APP_NAME)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    shutdown_scheduler()
