"""Inbound SCM webhook handling.

Authenticates a delivery against its repository link, records it in the
delivery log and hands tag pushes to the publisher. Nothing is persisted
for deliveries that fail authentication.
"""

import hmac
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

import httpx

from tfregistry.logging_config import get_logger
from tfregistry.scm.base import ProviderKind, SCMConnector
from tfregistry.scm.errors import UnsupportedProvider, WebhookPayloadMalformed
from tfregistry.services import scm_service
from tfregistry.services.encryption_service import TokenCipherError
from tfregistry.services.ingestion_context import IngestionContext
from tfregistry.services.scm_publisher import SCMPublisher

logger = get_logger(__name__)

# Providers whose "signature" header carries the shared secret itself
SHARED_TOKEN_KINDS = frozenset({ProviderKind.GITLAB, ProviderKind.AZURE_DEVOPS})


class WebhookRejected(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass
class WebhookReceipt:
    log_id: uuid.UUID
    dispatched: bool = False


class WebhookIngestor:
    def __init__(self, ctx: IngestionContext, publisher: SCMPublisher | None = None) -> None:
        self._ctx = ctx
        self._publisher = publisher or SCMPublisher(ctx)

    async def ingest(
        self,
        link_id: uuid.UUID,
        path_secret: str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookReceipt:
        h = httpx.Headers(headers)
        log = logger.bind(link_id=str(link_id))

        async with self._ctx.session() as db:
            link = await scm_service.get_repo_link(db, link_id)
            if link is None:
                raise WebhookRejected(404, "repository link not found")

            if not link.webhook_secret or not hmac.compare_digest(
                path_secret.encode(), link.webhook_secret.encode()
            ):
                log.warning("Webhook path secret mismatch")
                raise WebhookRejected(401, "invalid webhook secret")

            provider = link.provider
            if provider is None or not provider.is_active:
                raise WebhookRejected(404, "SCM provider not found")

            connector = self._connector_for(provider)
            signature = h.get(connector.signature_header, "")
            # Org-level hooks sign with the provider secret, repo hooks with the link's
            signing_secrets = [s for s in (link.webhook_secret, provider.webhook_secret) if s]
            if not any(
                connector.verify_delivery_signature(payload, signature, secret)
                for secret in signing_secrets
            ):
                log.warning("Webhook signature rejected", provider=provider.provider_type)
                raise WebhookRejected(401, "invalid webhook signature")

            try:
                hook = connector.parse_delivery(payload, h)
            except WebhookPayloadMalformed as e:
                raise WebhookRejected(400, str(e)) from None

            if await scm_service.find_event_by_delivery_id(db, link.id, hook.id) is not None:
                log.warning("Duplicate webhook delivery", event_id=hook.id)

            stored_signature = (
                scm_service.REDACTED if connector.kind in SHARED_TOKEN_KINDS else signature
            )
            event = await scm_service.record_webhook_event(
                db, link.id, hook, h, stored_signature
            )
            log_id = event.id
            auto_publish = link.auto_publish

        log.info(
            "Webhook received",
            event_id=hook.id,
            event_type=hook.type,
            ref=hook.ref,
            log_id=str(log_id),
        )

        receipt = WebhookReceipt(log_id=log_id)
        if hook.is_tag_event() and auto_publish:
            receipt.dispatched = self._ctx.dispatcher.submit(
                lambda: self._publisher.process_tag_push(log_id, link_id, hook),
                name=f"publish-{log_id}",
            )
            if not receipt.dispatched:
                async with self._ctx.session() as db:
                    await scm_service.update_webhook_event(
                        db, log_id, "failed", error="publish queue is full"
                    )
        return receipt

    def _connector_for(self, provider) -> SCMConnector:
        try:
            return scm_service.build_connector(
                provider, self._ctx.connectors, self._ctx.cipher, self._ctx.settings
            )
        except UnsupportedProvider as e:
            raise WebhookRejected(400, str(e)) from None
        except TokenCipherError:
            logger.error("Could not decrypt SCM client secret", provider_id=str(provider.id))
            raise WebhookRejected(500, "SCM provider credentials unavailable") from None
