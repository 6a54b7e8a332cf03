"""Provider mirror synchronization.

Copies provider releases from an upstream registry into local storage:

    history row (running) -> discover candidate providers -> policy/approval
    -> version + platform filters -> per platform: download metadata,
    SHA256SUMS + signature, stream binary while hashing, verify
    -> provider/version/platform rows + provenance -> history row

Each platform is isolated: one failure never aborts its siblings. Already
uploaded platforms are never rewritten.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tfregistry.db.models import (
    MirrorConfiguration,
    MirroredProvider,
    MirroredProviderVersion,
    MirrorSyncHistory,
    RegistryProvider,
    RegistryProviderPlatform,
    RegistryProviderVersion,
)
from tfregistry.logging_config import get_logger
from tfregistry.services.gpg_verification import (
    ChecksumMismatchError,
    SignatureVerificationError,
    key_id,
    verify_listed_checksum,
    verify_shasums_signature,
)
from tfregistry.services.ingestion_context import IngestionContext
from tfregistry.services.mirror_filters import (
    InvalidMirrorFilter,
    explicit_names,
    matches_any,
    parse_platform_filter,
    select_platforms,
    select_versions,
)
from tfregistry.services.mirror_policy_service import check_approval, evaluate_policies
from tfregistry.services.upstream_registry import (
    DownloadInfo,
    PlatformRef,
    ProviderVersionInfo,
    UpstreamRegistryClient,
    UpstreamRegistryError,
)
from tfregistry.storage.keys import (
    provider_binary_key,
    provider_shasums_key,
    provider_shasums_sig_key,
)
from tfregistry.storage.protocol import ObjectStoreError

logger = get_logger(__name__)

# Failures that fail one platform without being a bug
PLATFORM_ERRORS = (
    UpstreamRegistryError,
    ChecksumMismatchError,
    SignatureVerificationError,
    ObjectStoreError,
)
RECENT_HISTORY_LIMIT = 10


class MirrorNotFound(Exception):
    pass


class MirrorSyncInProgress(Exception):
    pass


class MirrorOwnershipError(Exception):
    """The local provider already belongs to a different mirror."""


@dataclass
class MirrorStatus:
    mirror_id: uuid.UUID
    name: str
    enabled: bool
    upstream_registry_url: str
    last_sync_at: datetime | None
    last_sync_status: str | None
    last_sync_error: str | None
    running: bool
    recent_history: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _ProviderTarget:
    mirror_id: uuid.UUID
    org_name: str
    namespace: str
    name: str
    provider_id: uuid.UUID
    mirrored_provider_id: uuid.UUID


@dataclass
class _Release:
    version_id: uuid.UUID
    shasums: bytes


@dataclass
class _ProviderOutcome:
    namespace: str
    name: str
    status: str = "synced"  # synced, partial, skipped, failed
    versions: int = 0
    platforms_synced: int = 0
    platforms_skipped: int = 0
    platforms_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_detail(self) -> dict[str, Any]:
        return {
            "provider": f"{self.namespace}/{self.name}",
            "status": self.status,
            "versions": self.versions,
            "platforms_synced": self.platforms_synced,
            "platforms_skipped": self.platforms_skipped,
            "platforms_failed": self.platforms_failed,
            "errors": self.errors[:20],
        }


def _history_row(h: MirrorSyncHistory) -> dict[str, Any]:
    return {
        "id": str(h.id),
        "status": h.status,
        "started_at": h.started_at.isoformat() if h.started_at else None,
        "completed_at": h.completed_at.isoformat() if h.completed_at else None,
        "providers_synced": h.providers_synced,
        "providers_failed": h.providers_failed,
        "error_message": h.error_message,
    }


class MirrorSyncService:
    def __init__(
        self, ctx: IngestionContext, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._ctx = ctx
        self._transport = transport
        self._running: set[uuid.UUID] = set()

    # --- Entry points ---

    async def trigger_sync(
        self,
        mirror_id: uuid.UUID,
        namespace: str | None = None,
        provider_name: str | None = None,
    ) -> uuid.UUID:
        """Start a run out-of-band. Returns the history row id."""
        if mirror_id in self._running:
            raise MirrorSyncInProgress(str(mirror_id))
        history_id = await self._start_history(mirror_id)

        accepted = self._ctx.dispatcher.submit(
            lambda: self.sync_mirror(mirror_id, namespace, provider_name, history_id=history_id),
            name=f"mirror-sync-{mirror_id}",
        )
        if not accepted:
            await self._finish_history(
                mirror_id, history_id, "failed", 0, 0, "sync queue is full", {}, "failed"
            )
        logger.info(
            "Mirror sync triggered",
            mirror_id=str(mirror_id),
            namespace=namespace,
            provider=provider_name,
            accepted=accepted,
        )
        return history_id

    async def get_status(self, mirror_id: uuid.UUID) -> MirrorStatus:
        async with self._ctx.session() as db:
            mirror = await db.get(MirrorConfiguration, mirror_id)
            if mirror is None:
                raise MirrorNotFound(str(mirror_id))
            result = await db.execute(
                select(MirrorSyncHistory)
                .where(MirrorSyncHistory.mirror_config_id == mirror_id)
                .order_by(MirrorSyncHistory.started_at.desc())
                .limit(RECENT_HISTORY_LIMIT)
            )
            history = list(result.scalars().all())
            return MirrorStatus(
                mirror_id=mirror.id,
                name=mirror.name,
                enabled=mirror.enabled,
                upstream_registry_url=mirror.upstream_registry_url,
                last_sync_at=mirror.last_sync_at,
                last_sync_status=mirror.last_sync_status,
                last_sync_error=mirror.last_sync_error,
                running=mirror_id in self._running
                or any(h.status == "running" for h in history[:1]),
                recent_history=[_history_row(h) for h in history],
            )

    async def sync_mirror(
        self,
        mirror_id: uuid.UUID,
        namespace: str | None = None,
        provider_name: str | None = None,
        history_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        """Run one sync to completion and record it. Returns the history id."""
        if mirror_id in self._running:
            if history_id is not None:
                await self._finish_history(
                    mirror_id, history_id, "cancelled", 0, 0, "another sync is running", {}, None
                )
            raise MirrorSyncInProgress(str(mirror_id))
        if history_id is None:
            history_id = await self._start_history(mirror_id)

        self._running.add(mirror_id)
        log = logger.bind(mirror_id=str(mirror_id), history_id=str(history_id))
        outcomes: list[_ProviderOutcome] = []
        try:
            outcomes = await self._run(mirror_id, namespace, provider_name)
        except asyncio.CancelledError:
            await self._finish_history(
                mirror_id, history_id, "cancelled", 0, 0, "sync cancelled", {}, "failed"
            )
            raise
        except (UpstreamRegistryError, InvalidMirrorFilter, MirrorNotFound) as e:
            log.warning("Mirror sync failed", error=str(e))
            await self._finish_history(mirror_id, history_id, "failed", 0, 0, str(e), {}, "failed")
            return history_id
        except Exception as e:
            log.error("Mirror sync failed unexpectedly", exc_info=True)
            await self._finish_history(
                mirror_id,
                history_id,
                "failed",
                0,
                0,
                f"internal error: {type(e).__name__}",
                {},
                "failed",
            )
            return history_id
        finally:
            self._running.discard(mirror_id)

        partial = sum(1 for o in outcomes if o.status == "partial")
        synced = partial + sum(1 for o in outcomes if o.status == "synced")
        failed = sum(1 for o in outcomes if o.status == "failed")
        first_error = next((e for o in outcomes for e in o.errors), None)
        details: dict[str, Any] = {"providers": [o.as_detail() for o in outcomes]}

        if failed == 0 and partial == 0:
            status, mirror_status = "success", "success"
        elif synced == 0:
            status, mirror_status = "failed", "failed"
        else:
            status, mirror_status = "success", "partial"
            details["partial"] = True

        await self._finish_history(
            mirror_id, history_id, status, synced, failed, first_error, details, mirror_status
        )
        log.info(
            "Mirror sync finished",
            status=mirror_status,
            providers_synced=synced,
            providers_failed=failed,
        )
        return history_id

    async def sync_due_mirrors(self) -> int:
        """Sync every enabled mirror whose interval has elapsed."""
        now = datetime.now(UTC)
        async with self._ctx.session() as db:
            result = await db.execute(
                select(MirrorConfiguration).where(MirrorConfiguration.enabled.is_(True))
            )
            due = [
                m.id
                for m in result.scalars().all()
                if m.approval_status == "approved"
                and (
                    m.last_sync_at is None
                    or now - m.last_sync_at >= timedelta(hours=m.sync_interval_hours)
                )
            ]

        count = 0
        for mirror_id in due:
            if mirror_id in self._running:
                continue
            try:
                await self.sync_mirror(mirror_id)
                count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Scheduled mirror sync failed", mirror_id=str(mirror_id), error=str(e), exc_info=e
                )
        return count

    async def run_sync_ticker(self, shutdown: asyncio.Event) -> None:
        """Background loop: look for due mirrors every ``check_interval_seconds``."""
        interval = self._ctx.settings.mirror.check_interval_seconds
        logger.info("Mirror sync ticker started", interval_seconds=interval)

        while not shutdown.is_set():
            try:
                await self.sync_due_mirrors()
            except asyncio.CancelledError:
                logger.info("Mirror sync ticker stopping")
                raise
            except Exception as e:
                logger.error("Mirror sync cycle failed", error=str(e), exc_info=e)

            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("Mirror sync ticker stopped")

    # --- History bookkeeping ---

    async def _start_history(self, mirror_id: uuid.UUID) -> uuid.UUID:
        async with self._ctx.session() as db:
            mirror = await db.get(MirrorConfiguration, mirror_id)
            if mirror is None:
                raise MirrorNotFound(str(mirror_id))
            history = MirrorSyncHistory(mirror_config_id=mirror_id, status="running")
            db.add(history)
            mirror.last_sync_status = "in_progress"
            await db.flush()
            return history.id

    async def _finish_history(
        self,
        mirror_id: uuid.UUID,
        history_id: uuid.UUID,
        status: str,
        synced: int,
        failed: int,
        error: str | None,
        details: dict[str, Any],
        mirror_status: str | None,
    ) -> None:
        now = datetime.now(UTC)
        async with self._ctx.session() as db:
            history = await db.get(MirrorSyncHistory, history_id)
            if history is not None:
                history.status = status
                history.completed_at = now
                history.providers_synced = synced
                history.providers_failed = failed
                history.error_message = error
                history.sync_details = details
            if mirror_status is None:
                return
            mirror = await db.get(MirrorConfiguration, mirror_id)
            if mirror is not None:
                mirror.last_sync_at = now
                mirror.last_sync_status = mirror_status
                mirror.last_sync_error = error

    # --- The run ---

    async def _run(
        self, mirror_id: uuid.UUID, namespace: str | None, provider_name: str | None
    ) -> list[_ProviderOutcome]:
        async with self._ctx.session() as db:
            mirror = await db.get(MirrorConfiguration, mirror_id)
            if mirror is None:
                raise MirrorNotFound(str(mirror_id))
            db.expunge(mirror)

        # Reject malformed filters before touching the network
        select_versions([], mirror.version_filter)
        parse_platform_filter(mirror.platform_filter)

        cfg = self._ctx.settings.mirror
        outcomes = []
        async with UpstreamRegistryClient(
            mirror.upstream_registry_url,
            timeout=cfg.request_timeout_seconds,
            download_timeout=cfg.download_timeout_seconds,
            transport=self._transport,
        ) as upstream:
            candidates = [c async for c in self._discover(upstream, mirror, namespace, provider_name)]
            logger.info("Mirror candidates discovered", mirror=mirror.name, count=len(candidates))
            for ns, name in candidates:
                outcomes.append(await self._sync_provider(upstream, mirror, ns, name))
        return outcomes

    async def _discover(
        self,
        upstream: UpstreamRegistryClient,
        mirror: MirrorConfiguration,
        namespace: str | None,
        provider_name: str | None,
    ) -> AsyncIterator[tuple[str, str]]:
        ns_filter = mirror.namespace_filter or []
        prov_filter = mirror.provider_filter or []

        def wanted(ns: str, name: str) -> bool:
            if namespace and ns.lower() != namespace.lower():
                return False
            if provider_name and name.lower() != provider_name.lower():
                return False
            return matches_any(ns, ns_filter) and matches_any(name, prov_filter)

        namespaces = [namespace] if namespace else explicit_names(ns_filter)
        names = [provider_name] if provider_name else explicit_names(prov_filter)

        if namespaces and names:
            for ns in namespaces:
                for name in names:
                    if wanted(ns, name):
                        yield ns, name
            return

        seen: set[tuple[str, str]] = set()
        for ns in namespaces or [None]:
            async for candidate in upstream.list_providers(ns):
                if candidate not in seen and wanted(*candidate):
                    seen.add(candidate)
                    yield candidate

    async def _sync_provider(
        self,
        upstream: UpstreamRegistryClient,
        mirror: MirrorConfiguration,
        namespace: str,
        name: str,
    ) -> _ProviderOutcome:
        outcome = _ProviderOutcome(namespace, name)
        log = logger.bind(mirror=mirror.name, provider=f"{namespace}/{name}")
        try:
            async with self._ctx.session() as db:
                decision = await evaluate_policies(db, mirror, namespace, name)
                if not await check_approval(db, mirror, namespace, name, decision):
                    outcome.status = "skipped"
                    outcome.errors.append(decision.reason if not decision.allowed else "awaiting approval")
                    log.info("Provider skipped by policy", reason=outcome.errors[-1])
                    return outcome
                target = await self._ensure_provider(db, mirror, namespace, name)

            versions = await upstream.list_versions(namespace, name)
            by_version = {v.version: v for v in versions}
            selected = select_versions([v.version for v in versions], mirror.version_filter)
            outcome.versions = len(selected)
            for version in selected:
                await self._sync_version(upstream, mirror, target, by_version[version], outcome)
        except asyncio.CancelledError:
            raise
        except (MirrorOwnershipError, *PLATFORM_ERRORS) as e:
            outcome.errors.append(f"{namespace}/{name}: {e}")
            log.warning("Provider sync failed", error=str(e))
        except Exception as e:
            outcome.errors.append(f"{namespace}/{name}: internal error: {type(e).__name__}")
            log.error("Provider sync failed unexpectedly", exc_info=True)

        if outcome.status != "skipped" and outcome.errors:
            outcome.status = "partial" if outcome.platforms_synced else "failed"
        return outcome

    async def _ensure_provider(
        self, db: AsyncSession, mirror: MirrorConfiguration, namespace: str, name: str
    ) -> _ProviderTarget:
        org = mirror.org_name or self._ctx.settings.mirror.default_org
        result = await db.execute(
            select(RegistryProvider).where(
                RegistryProvider.org_name == org,
                RegistryProvider.namespace == namespace,
                RegistryProvider.name == name,
            )
        )
        provider = result.scalars().first()
        if provider is None:
            provider = RegistryProvider(
                org_name=org,
                namespace=namespace,
                name=name,
                description=f"Mirrored from {mirror.upstream_registry_url}",
            )
            db.add(provider)
            await db.flush()

        result = await db.execute(
            select(MirroredProvider).where(MirroredProvider.provider_id == provider.id)
        )
        mirrored = result.scalars().first()
        if mirrored is None:
            mirrored = MirroredProvider(
                mirror_config_id=mirror.id,
                provider_id=provider.id,
                upstream_namespace=namespace,
                upstream_type=name,
            )
            db.add(mirrored)
            await db.flush()
        elif mirrored.mirror_config_id != mirror.id:
            raise MirrorOwnershipError(
                f"provider {org}/{namespace}/{name} is managed by another mirror"
            )

        return _ProviderTarget(
            mirror_id=mirror.id,
            org_name=org,
            namespace=namespace,
            name=name,
            provider_id=provider.id,
            mirrored_provider_id=mirrored.id,
        )

    async def _sync_version(
        self,
        upstream: UpstreamRegistryClient,
        mirror: MirrorConfiguration,
        target: _ProviderTarget,
        info: ProviderVersionInfo,
        outcome: _ProviderOutcome,
    ) -> None:
        platforms = select_platforms(info.platforms, mirror.platform_filter)
        release: _Release | None = None
        release_error: Exception | None = None
        synced = 0

        for platform in platforms:
            label = f"{target.namespace}/{target.name} {info.version} {platform.os}_{platform.arch}"
            try:
                if await self._platform_uploaded(target, info.version, platform):
                    outcome.platforms_skipped += 1
                    continue
                if release_error is not None:
                    raise release_error
                download = await upstream.get_download(
                    target.namespace, target.name, info.version, platform.os, platform.arch
                )
                if release is None:
                    try:
                        release = await self._prepare_release(upstream, target, info, download)
                    except PLATFORM_ERRORS as e:
                        release_error = e
                        raise
                await self._sync_platform(upstream, target, info.version, release, download)
                outcome.platforms_synced += 1
                synced += 1
            except asyncio.CancelledError:
                raise
            except PLATFORM_ERRORS as e:
                outcome.platforms_failed += 1
                outcome.errors.append(f"{label}: {e}")
                logger.warning("Platform sync failed", platform=label, error=str(e))
            except Exception as e:
                outcome.platforms_failed += 1
                outcome.errors.append(f"{label}: internal error: {type(e).__name__}")
                logger.error("Platform sync failed unexpectedly", platform=label, exc_info=True)

        if synced and release is not None:
            await self._record_mirrored_version(target, info.version, release.version_id)

    async def _platform_uploaded(
        self, target: _ProviderTarget, version: str, platform: PlatformRef
    ) -> bool:
        async with self._ctx.session() as db:
            result = await db.execute(
                select(RegistryProviderPlatform.id)
                .join(RegistryProviderVersion)
                .where(
                    RegistryProviderVersion.provider_id == target.provider_id,
                    RegistryProviderVersion.version == version,
                    RegistryProviderPlatform.os == platform.os,
                    RegistryProviderPlatform.arch == platform.arch,
                    RegistryProviderPlatform.upload_status == "uploaded",
                )
            )
            return result.scalar() is not None

    async def _prepare_release(
        self,
        upstream: UpstreamRegistryClient,
        target: _ProviderTarget,
        info: ProviderVersionInfo,
        download: DownloadInfo,
    ) -> _Release:
        """Fetch and verify SHA256SUMS once per version, store it, upsert the version row."""
        shasums = await upstream.fetch_bytes(download.shasums_url)
        signature = await upstream.fetch_bytes(download.shasums_signature_url)
        armor = verify_shasums_signature(
            shasums, signature, [k.ascii_armor for k in download.signing_keys]
        )

        storage = self._ctx.storage
        sums_key = provider_shasums_key(target.org_name, target.namespace, target.name, info.version)
        sig_key = provider_shasums_sig_key(target.org_name, target.namespace, target.name, info.version)
        if not await storage.exists(sums_key):
            await storage.put(sums_key, shasums, content_type="text/plain")
        if not await storage.exists(sig_key):
            await storage.put(sig_key, signature, content_type="application/octet-stream")

        async with self._ctx.session() as db:
            result = await db.execute(
                select(RegistryProviderVersion).where(
                    RegistryProviderVersion.provider_id == target.provider_id,
                    RegistryProviderVersion.version == info.version,
                )
            )
            row = result.scalars().first()
            if row is None:
                row = RegistryProviderVersion(
                    provider_id=target.provider_id,
                    version=info.version,
                    protocols=download.protocols or info.protocols or ["5.0"],
                    shasums_path=sums_key,
                    shasums_sig_path=sig_key,
                    gpg_key_id=key_id(armor),
                    gpg_ascii_armor=armor,
                )
                db.add(row)
                await db.flush()
            return _Release(version_id=row.id, shasums=shasums)

    async def _sync_platform(
        self,
        upstream: UpstreamRegistryClient,
        target: _ProviderTarget,
        version: str,
        release: _Release,
        download: DownloadInfo,
    ) -> None:
        expected = verify_listed_checksum(release.shasums, download.filename, download.shasum)
        key = provider_binary_key(
            target.org_name, target.namespace, target.name, version, download.os, download.arch
        )

        async with upstream.stream(download.download_url) as resp:
            meta = await self._ctx.storage.put_stream(
                key,
                resp.aiter_bytes(),
                content_type="application/zip",
                metadata={"upstream": download.download_url},
            )
        if meta.checksum != expected:
            await self._ctx.storage.delete(key)
            raise ChecksumMismatchError(f"downloaded {download.filename} does not match SHA256SUMS")

        try:
            async with self._ctx.session() as db:
                result = await db.execute(
                    select(RegistryProviderPlatform).where(
                        RegistryProviderPlatform.version_id == release.version_id,
                        RegistryProviderPlatform.os == download.os,
                        RegistryProviderPlatform.arch == download.arch,
                    )
                )
                row = result.scalars().first()
                if row is None:
                    row = RegistryProviderPlatform(
                        version_id=release.version_id, os=download.os, arch=download.arch
                    )
                    db.add(row)
                row.filename = download.filename
                row.shasum = expected
                row.storage_path = key
                row.size_bytes = meta.size_bytes
                row.upload_status = "uploaded"
        except BaseException:
            await self._ctx.storage.delete(key)
            raise

        logger.info(
            "Provider platform mirrored",
            provider=f"{target.namespace}/{target.name}",
            version=version,
            platform=f"{download.os}_{download.arch}",
            size_bytes=meta.size_bytes,
        )

    async def _record_mirrored_version(
        self, target: _ProviderTarget, version: str, version_id: uuid.UUID
    ) -> None:
        now = datetime.now(UTC)
        async with self._ctx.session() as db:
            result = await db.execute(
                select(MirroredProviderVersion).where(
                    MirroredProviderVersion.mirrored_provider_id == target.mirrored_provider_id,
                    MirroredProviderVersion.upstream_version == version,
                )
            )
            row = result.scalars().first()
            if row is None:
                row = MirroredProviderVersion(
                    mirrored_provider_id=target.mirrored_provider_id,
                    provider_version_id=version_id,
                    upstream_version=version,
                )
                db.add(row)
            row.synced_at = now
            row.shasum_verified = True
            row.gpg_verified = True

            mirrored = await db.get(MirroredProvider, target.mirrored_provider_id)
            if mirrored is not None:
                mirrored.last_synced_at = now
                mirrored.last_sync_version = version
