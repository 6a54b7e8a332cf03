"""Mirror administration endpoints.

Endpoints:
    POST /api/v1/admin/mirrors/{mirror_id}/sync     (start a sync, 202)
    GET  /api/v1/admin/mirrors/{mirror_id}/status   (config summary + history)
"""

import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from tfregistry.api.dependencies import get_mirror_sync, require_admin
from tfregistry.logging_config import get_logger
from tfregistry.services.mirror_sync_service import (
    MirrorNotFound,
    MirrorSyncInProgress,
    MirrorSyncService,
)

router = APIRouter(
    prefix="/admin/mirrors",
    tags=["mirrors"],
    dependencies=[Depends(require_admin)],
)
logger = get_logger(__name__)


class SyncRequest(BaseModel):
    namespace: str | None = None
    provider: str | None = None


@router.post("/{mirror_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_mirror_sync(
    mirror_id: uuid.UUID,
    body: SyncRequest | None = None,
    sync: MirrorSyncService = Depends(get_mirror_sync),
) -> dict[str, str]:
    target = body or SyncRequest()
    try:
        history_id = await sync.trigger_sync(mirror_id, target.namespace, target.provider)
    except MirrorNotFound:
        raise HTTPException(status_code=404, detail="Mirror not found") from None
    except MirrorSyncInProgress:
        raise HTTPException(status_code=409, detail="A sync is already running") from None
    return {"message": "sync started", "history_id": str(history_id)}


@router.get("/{mirror_id}/status")
async def mirror_status(
    mirror_id: uuid.UUID,
    sync: MirrorSyncService = Depends(get_mirror_sync),
) -> dict:
    try:
        result = await sync.get_status(mirror_id)
    except MirrorNotFound:
        raise HTTPException(status_code=404, detail="Mirror not found") from None
    data = asdict(result)
    data["mirror_id"] = str(result.mirror_id)
    data["last_sync_at"] = result.last_sync_at.isoformat() if result.last_sync_at else None
    return data
