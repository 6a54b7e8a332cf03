"""Turns a verified tag push into an immutable module version.

Flow for one delivery (the webhook log row tracks each step):

    processing -> extract version from tag -> conflict check
    -> download archive at the pushed commit -> safe extract -> validate
    -> repackage with provenance manifest -> reserve version row
    -> upload -> finalize row -> completed

Any failure lands the log row in ``failed`` with a secrets-free message.
Version creation is guarded by the (module_id, version) unique constraint,
so two deliveries racing for the same tag produce one version and one
conflict.
"""

import asyncio
import re
import tempfile
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiofiles
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from tfregistry.db.models import ModuleSCMRepo, RegistryModuleVersion
from tfregistry.logging_config import get_logger
from tfregistry.scm.base import ArchiveFormat, IncomingHook
from tfregistry.scm.errors import SCMError
from tfregistry.services import scm_service
from tfregistry.services.encryption_service import TokenCipherError
from tfregistry.services.ingestion_context import IngestionContext
from tfregistry.services.module_archive import (
    PublishError,
    build_module_tarball,
    locate_module_root,
    safe_extract,
    validate_module,
)
from tfregistry.storage.keys import module_tarball_key
from tfregistry.storage.protocol import ObjectStoreError

logger = get_logger(__name__)

SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(-[0-9A-Za-z-]+(\.[0-9A-Za-z-]+)*)?"
    r"(\+[0-9A-Za-z-]+(\.[0-9A-Za-z-]+)*)?$"
)
_UPLOAD_CHUNK = 256 * 1024


class VersionExtractionError(PublishError):
    def __init__(self) -> None:
        super().__init__("could not extract version from tag")


class VersionConflictError(PublishError):
    def __init__(self, version: str) -> None:
        super().__init__(f"version {version} already exists")
        self.version = version


@dataclass
class PublishResult:
    status: str  # completed, failed
    version: str | None = None
    version_id: uuid.UUID | None = None
    checksum: str | None = None
    error: str | None = None
    conflict: bool = False


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Anchored regex for a tag glob where each ``*`` captures a segment."""
    return re.compile("^" + "(.*)".join(re.escape(part) for part in pattern.split("*")) + "$")


def extract_version_from_tag(tag: str, pattern: str) -> str | None:
    """Derive a semver from a tag using the link's glob.

    ``v*`` + ``v1.2.3`` -> ``1.2.3``; ``release-*`` + ``release-2.0.0-beta.1``
    -> ``2.0.0-beta.1``. Returns None when the tag does not match the glob or
    the captured text is not strict semver.
    """
    if not tag or "*" not in pattern:
        return None
    match = glob_to_regex(pattern).match(tag)
    if match is None:
        return None
    candidate = match.group(1)
    if candidate.startswith("v"):
        candidate = candidate[1:]
    if not SEMVER_RE.match(candidate):
        return None
    return candidate


async def _file_chunks(path: Path) -> AsyncIterator[bytes]:
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(_UPLOAD_CHUNK):
            yield chunk


@dataclass
class _Plan:
    link_id: uuid.UUID
    module_id: uuid.UUID
    version: str
    storage_key: str
    owner: str
    repo: str
    module_path: str
    published_by: str | None


class SCMPublisher:
    def __init__(self, ctx: IngestionContext) -> None:
        self._ctx = ctx

    async def process_tag_push(
        self, log_id: uuid.UUID, link_id: uuid.UUID, hook: IncomingHook
    ) -> PublishResult:
        log = logger.bind(log_id=str(log_id), link_id=str(link_id), tag=hook.tag_name)

        async with self._ctx.session() as db:
            await scm_service.update_webhook_event(db, log_id, "processing")

        try:
            result = await self._publish(log_id, link_id, hook)
        except asyncio.CancelledError:
            await self._mark_failed(log_id, "publish cancelled")
            raise
        except VersionConflictError as e:
            log.info("Publish skipped, version exists", version=e.version)
            await self._mark_failed(log_id, str(e))
            return PublishResult(status="failed", version=e.version, error=str(e), conflict=True)
        except (PublishError, SCMError, TokenCipherError, ObjectStoreError) as e:
            log.warning("Publish failed", error=str(e))
            await self._mark_failed(log_id, str(e))
            return PublishResult(status="failed", error=str(e))
        except Exception as e:
            log.error("Publish failed unexpectedly", exc_info=True)
            message = f"internal error: {type(e).__name__}"
            await self._mark_failed(log_id, message)
            return PublishResult(status="failed", error=message)

        log.info("Module version published", version=result.version, checksum=result.checksum)
        return result

    async def _mark_failed(self, log_id: uuid.UUID, message: str) -> None:
        try:
            async with self._ctx.session() as db:
                await scm_service.update_webhook_event(db, log_id, "failed", error=message)
        except Exception:
            logger.error("Could not record publish failure", log_id=str(log_id), exc_info=True)

    def _is_stale_reservation(self, row: RegistryModuleVersion) -> bool:
        if row.upload_status != "pending" or row.created_at is None:
            return False
        age = datetime.now(UTC) - row.created_at
        return age >= timedelta(seconds=self._ctx.settings.publishing.stale_reservation_seconds)

    async def _prepare(self, link_id: uuid.UUID, hook: IncomingHook):
        """Resolve link, version and token.

        A pending row older than the reservation timeout belongs to a publish
        that died before finalizing or compensating; it is dropped so the tag
        can be retried. Fresh pending rows and uploaded versions conflict.
        """
        async with self._ctx.session() as db:
            link = await scm_service.get_repo_link(db, link_id)
            if link is None:
                raise PublishError("repository link not found")
            version = extract_version_from_tag(hook.tag_name, link.tag_pattern)
            if version is None:
                raise VersionExtractionError()

            result = await db.execute(
                select(RegistryModuleVersion).where(
                    RegistryModuleVersion.module_id == link.module_id,
                    RegistryModuleVersion.version == version,
                )
            )
            existing = result.scalars().first()
            if existing is not None:
                if not self._is_stale_reservation(existing):
                    raise VersionConflictError(version)
                logger.warning(
                    "Reclaiming stale version reservation",
                    version=version,
                    version_id=str(existing.id),
                    reserved_at=existing.created_at.isoformat(),
                )
                await db.delete(existing)
                await db.flush()

            provider = link.provider
            if provider is None or not provider.is_active:
                raise PublishError("SCM provider is missing or inactive")
            connector = scm_service.build_connector(
                provider, self._ctx.connectors, self._ctx.cipher, self._ctx.settings
            )
            token_row = await scm_service.find_link_token(db, link)
            if token_row is None:
                raise PublishError("no OAuth token available for the repository provider")
            token = await scm_service.ensure_fresh_token(db, token_row, connector, self._ctx.cipher)

            module = link.module
            plan = _Plan(
                link_id=link.id,
                module_id=link.module_id,
                version=version,
                storage_key=module_tarball_key(
                    module.namespace, module.name, module.provider, version
                ),
                owner=link.repository_owner,
                repo=link.repository_name,
                module_path=link.module_path,
                published_by=link.linked_by,
            )
        return plan, connector, token

    async def _publish(
        self, log_id: uuid.UUID, link_id: uuid.UUID, hook: IncomingHook
    ) -> PublishResult:
        plan, connector, token = await self._prepare(link_id, hook)
        published_at = datetime.now(UTC)

        scratch_parent = self._ctx.settings.publishing.scratch_dir or None
        with tempfile.TemporaryDirectory(prefix="tfregistry-publish-", dir=scratch_parent) as tmp:
            scratch = Path(tmp)

            async with await connector.download_source_archive(
                token, plan.owner, plan.repo, hook.commit_sha, ArchiveFormat.TARBALL
            ) as stream:
                fmt = stream.format
                archive_path = scratch / ("source.zip" if fmt == ArchiveFormat.ZIPBALL else "source.tar.gz")
                async with aiofiles.open(archive_path, "wb") as f:
                    async for chunk in stream.aiter_bytes():
                        await f.write(chunk)

            package_path = scratch / "module.tar.gz"
            checksum, size = await asyncio.to_thread(
                self._package,
                archive_path,
                fmt,
                scratch / "src",
                plan.module_path,
                package_path,
                hook.commit_sha,
                published_at,
            )

            version_id = await self._reserve_version(plan, hook)
            try:
                meta = await self._ctx.storage.put_stream(
                    plan.storage_key,
                    _file_chunks(package_path),
                    content_type="application/gzip",
                    metadata={"commit": hook.commit_sha, "tag": hook.tag_name},
                    expected_size=size,
                )
                if meta.checksum != checksum:
                    raise PublishError("stored artifact checksum does not match packaged archive")
                await self._finalize(log_id, plan, version_id, checksum, size, hook.commit_sha)
            except BaseException:
                await self._compensate(plan, version_id)
                raise

        return PublishResult(
            status="completed", version=plan.version, version_id=version_id, checksum=checksum
        )

    @staticmethod
    def _package(
        archive_path: Path,
        fmt: ArchiveFormat,
        extract_dir: Path,
        module_path: str,
        package_path: Path,
        commit_sha: str,
        published_at: datetime,
    ) -> tuple[str, int]:
        safe_extract(archive_path, extract_dir, fmt)
        module_root = locate_module_root(extract_dir, module_path)
        validate_module(module_root)
        return build_module_tarball(module_root, package_path, commit_sha, published_at)

    async def _reserve_version(self, plan: _Plan, hook: IncomingHook) -> uuid.UUID:
        """Claim (module, version) before touching storage. Losers get a conflict."""
        try:
            async with self._ctx.session() as db:
                row = RegistryModuleVersion(
                    module_id=plan.module_id,
                    version=plan.version,
                    upload_status="pending",
                    storage_path=plan.storage_key,
                    storage_backend=self._ctx.storage.backend_name,
                    commit_sha=hook.commit_sha,
                    tag_name=hook.tag_name,
                    scm_repo_id=plan.link_id,
                    published_by=plan.published_by,
                )
                db.add(row)
                await db.flush()
                return row.id
        except IntegrityError:
            raise VersionConflictError(plan.version) from None

    async def _finalize(
        self,
        log_id: uuid.UUID,
        plan: _Plan,
        version_id: uuid.UUID,
        checksum: str,
        size: int,
        commit_sha: str,
    ) -> None:
        async with self._ctx.session() as db:
            row = await db.get(RegistryModuleVersion, version_id)
            if row is None:
                raise PublishError("version reservation disappeared during upload")
            row.checksum = checksum
            row.size_bytes = size
            row.upload_status = "uploaded"

            link = await db.get(ModuleSCMRepo, plan.link_id)
            if link is not None:
                link.last_sync_at = datetime.now(UTC)
                link.last_sync_commit = commit_sha

            await scm_service.update_webhook_event(
                db, log_id, "completed", result_version_id=version_id, error=None
            )

    async def _compensate(self, plan: _Plan, version_id: uuid.UUID) -> None:
        """Best-effort removal of a half-published version."""
        try:
            await self._ctx.storage.delete(plan.storage_key)
        except Exception:
            logger.error("Could not delete partial artifact", key=plan.storage_key, exc_info=True)
        try:
            async with self._ctx.session() as db:
                await db.execute(
                    delete(RegistryModuleVersion).where(
                        RegistryModuleVersion.id == version_id,
                        RegistryModuleVersion.upload_status == "pending",
                    )
                )
        except Exception:
            logger.error("Could not release version reservation", version_id=str(version_id), exc_info=True)
