"""FastAPI dependencies for the ingestion endpoints.

The ingestion components are built once in the lifespan handler and kept
on ``app.state``; these dependencies hand them to route handlers. Mirror
administration is guarded by a static bearer token from configuration.
"""

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tfregistry.config import settings
from tfregistry.logging_config import get_logger
from tfregistry.services.mirror_sync_service import MirrorSyncService
from tfregistry.services.webhook_ingestion import WebhookIngestor

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def _state(request: Request, name: str):  # type: ignore[no-untyped-def]
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return value


def get_webhook_ingestor(request: Request) -> WebhookIngestor:
    return _state(request, "webhook_ingestor")


def get_mirror_sync(request: Request) -> MirrorSyncService:
    return _state(request, "mirror_sync")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Accept only the configured admin bearer token."""
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Admin API is disabled",
        )
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        logger.warning("Rejected admin request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
