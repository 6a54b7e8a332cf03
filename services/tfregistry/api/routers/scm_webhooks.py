"""SCM webhook receiver.

Endpoints:
    POST /webhooks/scm/{link_id}/{secret}

The secret in the path identifies the repository link's webhook; the
provider signature header is verified on top of it. Tag pushes on links
with auto-publish enabled are published in the background.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from tfregistry.api.dependencies import get_webhook_ingestor
from tfregistry.logging_config import get_logger
from tfregistry.services.webhook_ingestion import WebhookIngestor, WebhookRejected

router = APIRouter(prefix="/webhooks", tags=["scm-webhooks"])
logger = get_logger(__name__)


@router.post("/scm/{link_id}/{secret}")
async def receive_scm_webhook(
    link_id: uuid.UUID,
    secret: str,
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> JSONResponse:
    payload = await request.body()
    try:
        receipt = await ingestor.ingest(link_id, secret, payload, request.headers)
    except WebhookRejected as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail) from None

    return JSONResponse(
        content={
            "message": "webhook received",
            "log_id": str(receipt.log_id),
            "publishing": receipt.dispatched,
        }
    )
