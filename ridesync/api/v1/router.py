"""
API Router v1

Combines all route modules.
"""

from fastapi import APIRouter

from ridesync.api.v1.routes import webhooks, backfill, imports, duplicates

api_router = APIRouter()

api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
api_router.include_router(backfill.router, tags=["Backfill"])
api_router.include_router(imports.router, prefix="/imports", tags=["Imports"])
api_router.include_router(duplicates.router, prefix="/duplicates", tags=["Duplicates"])
