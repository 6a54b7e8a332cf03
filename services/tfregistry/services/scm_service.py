"""Persistence and credential handling for SCM integrations.

Looks up providers, repository links and OAuth tokens, builds connectors
with decrypted client secrets, keeps user tokens fresh, and records
webhook deliveries.
"""

import secrets
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tfregistry.config import Settings
from tfregistry.db.models import (
    ModuleSCMRepo,
    SCMOAuthToken,
    SCMProvider,
    SCMWebhookEvent,
)
from tfregistry.logging_config import get_logger
from tfregistry.scm.base import (
    AccessToken,
    ConnectorSettings,
    IncomingHook,
    ProviderKind,
    SCMConnector,
    WebhookSetup,
)
from tfregistry.scm.connectors import ConnectorRegistry
from tfregistry.scm.errors import TokenRefreshFailed, UnsupportedProvider
from tfregistry.services.encryption_service import TokenCipher

logger = get_logger(__name__)

# Headers never copied into the delivery log
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "x-gitlab-token",
        "x-vss-signature",
        "proxy-authorization",
    }
)
REDACTED = "[redacted]"


# --- Providers and connectors ---


def connector_settings(
    provider: SCMProvider, cipher: TokenCipher, settings: Settings
) -> ConnectorSettings:
    """Build connector settings, decrypting the stored client secret."""
    try:
        kind = ProviderKind(provider.provider_type)
    except ValueError:
        raise UnsupportedProvider(provider.provider_type) from None
    return ConnectorSettings(
        kind=kind,
        client_id=provider.client_id,
        client_secret=cipher.open(provider.client_secret_encrypted),
        callback_url=settings.scm.oauth_callback_url,
        base_url=provider.base_url,
        tenant_id=provider.tenant_id,
        organization=provider.organization,
        request_timeout=settings.scm.request_timeout_seconds,
        archive_timeout=settings.scm.archive_timeout_seconds,
    )


def build_connector(
    provider: SCMProvider,
    registry: ConnectorRegistry,
    cipher: TokenCipher,
    settings: Settings,
) -> SCMConnector:
    return registry.build(connector_settings(provider, cipher, settings))


# --- Repository links ---


async def get_repo_link(db: AsyncSession, link_id: uuid.UUID) -> ModuleSCMRepo | None:
    """Load a link with its module and provider."""
    result = await db.execute(
        select(ModuleSCMRepo)
        .where(ModuleSCMRepo.id == link_id)
        .options(selectinload(ModuleSCMRepo.module), selectinload(ModuleSCMRepo.provider))
    )
    return result.scalars().first()


def webhook_callback_url(settings: Settings, link: ModuleSCMRepo) -> str:
    return f"{settings.scm.public_url.rstrip('/')}/webhooks/scm/{link.id}/{link.webhook_secret}"


async def enable_link_webhook(
    db: AsyncSession,
    link: ModuleSCMRepo,
    connector: SCMConnector,
    token: AccessToken,
    settings: Settings,
) -> ModuleSCMRepo:
    """Register a webhook on the remote repository and record it on the link.

    A fresh secret is generated per link; it is both part of the callback
    path and the signing secret.
    """
    link.webhook_secret = secrets.token_urlsafe(32)
    callback_url = webhook_callback_url(settings, link)
    info = await connector.register_webhook(
        token,
        link.repository_owner,
        link.repository_name,
        WebhookSetup(callback_url=callback_url, secret=link.webhook_secret),
    )
    link.webhook_id = info.id
    link.webhook_url = callback_url
    link.webhook_enabled = True
    await db.flush()
    logger.info("Repository webhook enabled", link_id=str(link.id), hook_id=info.id)
    return link


async def disable_link_webhook(
    db: AsyncSession,
    link: ModuleSCMRepo,
    connector: SCMConnector,
    token: AccessToken,
) -> None:
    if link.webhook_id:
        await connector.remove_webhook(
            token, link.repository_owner, link.repository_name, link.webhook_id
        )
    link.webhook_id = None
    link.webhook_url = None
    link.webhook_enabled = False
    await db.flush()
    logger.info("Repository webhook disabled", link_id=str(link.id))


# --- OAuth tokens ---


def access_token_from_row(row: SCMOAuthToken, cipher: TokenCipher) -> AccessToken:
    return AccessToken(
        access_token=cipher.open(row.access_token_encrypted),
        token_type=row.token_type,
        refresh_token=cipher.open(row.refresh_token_encrypted),
        expires_at=row.expires_at,
        scopes=list(row.scopes or []),
    )


async def store_token(
    db: AsyncSession,
    provider_id: uuid.UUID,
    user_email: str,
    token: AccessToken,
    cipher: TokenCipher,
) -> SCMOAuthToken:
    """Insert or replace the (user, provider) token."""
    result = await db.execute(
        select(SCMOAuthToken).where(
            SCMOAuthToken.user_email == user_email,
            SCMOAuthToken.scm_provider_id == provider_id,
        )
    )
    row = result.scalars().first()
    if row is None:
        row = SCMOAuthToken(user_email=user_email, scm_provider_id=provider_id)
        db.add(row)
    _apply_token(row, token, cipher)
    await db.flush()
    return row


def _apply_token(row: SCMOAuthToken, token: AccessToken, cipher: TokenCipher) -> None:
    row.access_token_encrypted = cipher.seal(token.access_token)
    row.refresh_token_encrypted = cipher.seal(token.refresh_token)
    row.token_type = token.token_type
    row.scopes = list(token.scopes)
    row.expires_at = token.expires_at


async def find_link_token(db: AsyncSession, link: ModuleSCMRepo) -> SCMOAuthToken | None:
    """Token used for a link's downloads.

    Prefers the user who created the link; falls back to the most recently
    refreshed token for the same provider.
    """
    if link.linked_by:
        result = await db.execute(
            select(SCMOAuthToken).where(
                SCMOAuthToken.scm_provider_id == link.scm_provider_id,
                SCMOAuthToken.user_email == link.linked_by,
            )
        )
        row = result.scalars().first()
        if row is not None:
            return row
    result = await db.execute(
        select(SCMOAuthToken)
        .where(SCMOAuthToken.scm_provider_id == link.scm_provider_id)
        .order_by(SCMOAuthToken.updated_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def ensure_fresh_token(
    db: AsyncSession,
    row: SCMOAuthToken,
    connector: SCMConnector,
    cipher: TokenCipher,
) -> AccessToken:
    """Return a usable token, refreshing and persisting it in place if expired."""
    token = access_token_from_row(row, cipher)
    if not token.is_expired():
        return token
    if not token.refresh_token:
        raise TokenRefreshFailed("token expired and no refresh token is stored")
    renewed = await connector.renew_token(token.refresh_token)
    if not renewed.refresh_token:
        # Some providers only rotate the access token
        renewed.refresh_token = token.refresh_token
    _apply_token(row, renewed, cipher)
    await db.flush()
    logger.info(
        "SCM token refreshed",
        provider_id=str(row.scm_provider_id),
        user=row.user_email,
    )
    return renewed


# --- Webhook delivery log ---


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        name: REDACTED if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


async def find_event_by_delivery_id(
    db: AsyncSession, link_id: uuid.UUID, event_id: str
) -> SCMWebhookEvent | None:
    if not event_id:
        return None
    result = await db.execute(
        select(SCMWebhookEvent)
        .where(
            SCMWebhookEvent.module_scm_repo_id == link_id,
            SCMWebhookEvent.event_id == event_id,
        )
        .limit(1)
    )
    return result.scalars().first()


async def record_webhook_event(
    db: AsyncSession,
    link_id: uuid.UUID,
    hook: IncomingHook,
    headers: Mapping[str, str],
    signature: str,
) -> SCMWebhookEvent:
    """Persist a verified delivery in state ``logged``."""
    event = SCMWebhookEvent(
        module_scm_repo_id=link_id,
        event_id=hook.id,
        event_type=hook.type,
        ref=hook.ref,
        commit_sha=hook.commit_sha,
        tag_name=hook.tag_name,
        payload=hook.payload,
        headers=redact_headers(headers),
        signature=signature,
        signature_valid=True,
        state="logged",
    )
    db.add(event)
    await db.flush()
    return event


async def update_webhook_event(
    db: AsyncSession,
    log_id: uuid.UUID,
    state: str,
    **fields: Any,
) -> SCMWebhookEvent | None:
    """Move a delivery log row to ``state`` and set timestamps for it."""
    result = await db.execute(select(SCMWebhookEvent).where(SCMWebhookEvent.id == log_id))
    event = result.scalars().first()
    if event is None:
        logger.warning("Webhook log row vanished", log_id=str(log_id))
        return None
    event.state = state
    now = datetime.now(UTC)
    if state == "processing":
        event.processing_started_at = now
    elif state in ("completed", "failed"):
        event.processed_at = now
    for name, value in fields.items():
        setattr(event, name, value)
    await db.flush()
    return event
