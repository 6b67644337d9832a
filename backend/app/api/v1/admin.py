"""Key administration endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Query

from app.api.deps import AdminActor, ServicesDep
from app.schemas.audit import KeyListResponse, KeyOut

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/keys",
    response_model=KeyListResponse,
    summary="List key ring entries and their usage",
)
async def list_keys(
    _admin: AdminActor,
    services: ServicesDep,
    rotation_limit: int = Query(default=100, ge=1, le=1000),
) -> KeyListResponse:
    """Key metadata only; material never leaves the process."""
    usage = await services.key_rotation.key_usage()
    pending = await services.key_rotation.records_requiring_rotation(rotation_limit)
    return KeyListResponse(
        active_key_id=services.keyring.active_key_id,
        keys=[
            KeyOut(
                key_id=u.key.key_id,
                status=u.key.status.value,
                installed_at=u.key.installed_at,
                note_count=u.note_count,
            )
            for u in usage
        ],
        notes_requiring_rotation=pending,
    )
