"""
FastAPI download endpoint for filesystem presigned URLs.

Validates the HMAC-signed token and streams the stored artifact. Terraform
clients follow registry download URLs here exactly as they would follow a
cloud bucket URL.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from tfregistry.logging_config import get_logger
from tfregistry.storage.protocol import ObjectNotFoundError

if TYPE_CHECKING:
    from tfregistry.storage.filesystem import FilesystemStore

router = APIRouter(tags=["storage"])
logger = get_logger(__name__)

# Set by storage init
_store: FilesystemStore | None = None


def set_filesystem_store(store: FilesystemStore | None) -> None:
    """Register the filesystem store instance for route handlers."""
    global _store  # noqa: PLW0603
    _store = store


def _get_store() -> FilesystemStore:
    if _store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Filesystem storage not initialized",
        )
    return _store


@router.get("/storage/get/{key:path}")
async def storage_get(key: str, request: Request) -> StreamingResponse:
    """Handle a presigned GET: validate signature and stream the object."""
    store = _get_store()

    expires = request.query_params.get("expires", "")
    sig = request.query_params.get("sig", "")

    if not store.verify_signature("GET", key, expires, sig):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or expired signature",
        )

    try:
        meta = await store.head(key)
    except ObjectNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Object not found: {key}",
        ) from e

    return StreamingResponse(
        store.iter_bytes(key),
        media_type=meta.content_type,
        headers={
            "ETag": f'"{meta.checksum}"',
            "Content-Length": str(meta.size_bytes),
        },
    )
