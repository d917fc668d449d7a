"""
Main API router aggregator
"""
from fastapi import APIRouter

from caseflow.api.v1.endpoints import admin, cases, jobs

api_router = APIRouter()

# Include routers
api_router.include_router(cases.router, prefix="/cases", tags=["Cases"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
