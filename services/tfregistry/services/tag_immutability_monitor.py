"""Detects published tags that were moved to a different commit.

A published module version records the tag and commit it was built from.
The monitor periodically re-resolves each tag through the linked
repository and files an ``ImmutabilityViolation`` when the commit
changed. Versions themselves are never touched.
"""

import asyncio
import uuid
from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tfregistry.db.models import ImmutabilityViolation, ModuleSCMRepo, RegistryModuleVersion
from tfregistry.logging_config import get_logger
from tfregistry.scm.base import AccessToken, SCMConnector
from tfregistry.scm.errors import SCMError, TagNotFound
from tfregistry.services import scm_service
from tfregistry.services.encryption_service import TokenCipherError
from tfregistry.services.ingestion_context import IngestionContext

logger = get_logger(__name__)


@dataclass
class ImmutabilityReport:
    checked: int = 0
    violations: int = 0
    missing: int = 0
    errors: int = 0


async def _published_versions(db: AsyncSession) -> dict[uuid.UUID, list[RegistryModuleVersion]]:
    result = await db.execute(
        select(RegistryModuleVersion).where(
            RegistryModuleVersion.scm_repo_id.is_not(None),
            RegistryModuleVersion.tag_name.is_not(None),
            RegistryModuleVersion.commit_sha.is_not(None),
            RegistryModuleVersion.upload_status == "uploaded",
        )
    )
    by_link: dict[uuid.UUID, list[RegistryModuleVersion]] = defaultdict(list)
    for version in result.scalars().all():
        by_link[version.scm_repo_id].append(version)
    return by_link


async def _open_violation_exists(
    db: AsyncSession, version_id: uuid.UUID, detected_sha: str
) -> bool:
    result = await db.execute(
        select(ImmutabilityViolation.id).where(
            ImmutabilityViolation.module_version_id == version_id,
            ImmutabilityViolation.detected_commit_sha == detected_sha,
            ImmutabilityViolation.resolved.is_(False),
        )
    )
    return result.scalar() is not None


async def _link_access(
    ctx: IngestionContext, db: AsyncSession, link: ModuleSCMRepo
) -> tuple[SCMConnector, AccessToken]:
    provider = link.provider
    if provider is None or not provider.is_active:
        raise SCMError("SCM provider is missing or inactive")
    connector = scm_service.build_connector(provider, ctx.connectors, ctx.cipher, ctx.settings)
    token_row = await scm_service.find_link_token(db, link)
    if token_row is None:
        raise SCMError("no OAuth token available for the repository provider")
    token = await scm_service.ensure_fresh_token(db, token_row, connector, ctx.cipher)
    return connector, token


async def _check_link(
    ctx: IngestionContext,
    db: AsyncSession,
    link_id: uuid.UUID,
    versions: list[RegistryModuleVersion],
    report: ImmutabilityReport,
) -> None:
    link = await scm_service.get_repo_link(db, link_id)
    if link is None:
        return
    try:
        connector, token = await _link_access(ctx, db, link)
    except (SCMError, TokenCipherError) as e:
        report.errors += len(versions)
        logger.warning("Cannot check tags for repository", link_id=str(link_id), error=str(e))
        return

    for version in versions:
        report.checked += 1
        try:
            tag = await connector.fetch_tag_by_name(
                token, link.repository_owner, link.repository_name, version.tag_name
            )
        except TagNotFound:
            report.missing += 1
            logger.warning(
                "Published tag no longer exists",
                link_id=str(link_id),
                tag=version.tag_name,
                version=version.version,
            )
            continue
        except SCMError as e:
            report.errors += 1
            logger.warning(
                "Tag lookup failed", link_id=str(link_id), tag=version.tag_name, error=str(e)
            )
            continue

        if tag.commit_sha.lower() == version.commit_sha.lower():
            continue
        if await _open_violation_exists(db, version.id, tag.commit_sha):
            continue

        db.add(
            ImmutabilityViolation(
                module_version_id=version.id,
                tag_name=version.tag_name,
                original_commit_sha=version.commit_sha,
                detected_commit_sha=tag.commit_sha,
            )
        )
        await db.flush()
        report.violations += 1
        logger.warning(
            "Tag moved after publishing",
            link_id=str(link_id),
            tag=version.tag_name,
            version=version.version,
            original_commit=version.commit_sha,
            detected_commit=tag.commit_sha,
        )


async def check_tag_immutability(ctx: IngestionContext) -> ImmutabilityReport:
    """One pass over every published SCM-sourced version."""
    report = ImmutabilityReport()
    async with ctx.session() as db:
        by_link = await _published_versions(db)

    for link_id, versions in by_link.items():
        try:
            async with ctx.session() as db:
                await _check_link(ctx, db, link_id, versions, report)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            report.errors += 1
            logger.error("Tag check failed", link_id=str(link_id), error=str(e), exc_info=e)

    logger.info(
        "Tag immutability check completed",
        checked=report.checked,
        violations=report.violations,
        missing=report.missing,
        errors=report.errors,
    )
    return report


async def run_immutability_monitor(ctx: IngestionContext, shutdown: asyncio.Event) -> None:
    """Check now, then every ``immutability_check_interval_hours`` until shutdown."""
    interval = ctx.settings.publishing.immutability_check_interval_hours * 3600
    if interval <= 0:
        interval = 24 * 3600
    logger.info("Tag immutability monitor started", interval_seconds=interval)

    while not shutdown.is_set():
        try:
            await check_tag_immutability(ctx)
        except asyncio.CancelledError:
            logger.info("Tag immutability monitor stopping")
            raise
        except Exception as e:
            logger.error("Tag immutability check failed", error=str(e), exc_info=e)

        try:
            await asyncio.wait_for(shutdown.wait(), timeout=interval)
        except TimeoutError:
            pass
    logger.info("Tag immutability monitor stopped")
