"""API v1 router aggregator."""

from fastapi import APIRouter

from app.api.v1 import admin, audit, notes

router = APIRouter(prefix="/api/v1")
router.include_router(notes.router)
router.include_router(audit.router)
router.include_router(admin.router)
