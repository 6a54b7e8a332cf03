"""Tests for the provider mirror sync engine."""

import asyncio
import hashlib
import uuid
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from tfregistry.services.gpg_verification import SignatureVerificationError
from tfregistry.services.mirror_filters import InvalidVersionFilter
from tfregistry.services.mirror_sync_service import (
    MirrorSyncInProgress,
    MirrorSyncService,
    _ProviderOutcome,
    _ProviderTarget,
    _Release,
)
from tfregistry.services.upstream_registry import (
    PlatformRef,
    ProviderVersionInfo,
    UpstreamRegistryClient,
    UpstreamRegistryError,
)
from tfregistry.storage.filesystem import FilesystemStore
from tfregistry.storage.keys import provider_binary_key

SERVICE = "tfregistry.services.mirror_sync_service.MirrorSyncService"
BASE = "https://registry.example.com"

LINUX_ZIP = b"linux provider binary"
DARWIN_ZIP = b"darwin provider binary"


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


SHASUMS = (
    f"{_sha(LINUX_ZIP)}  terraform-provider-null_3.2.1_linux_amd64.zip\n"
    f"{_sha(DARWIN_ZIP)}  terraform-provider-null_3.2.1_darwin_arm64.zip\n"
).encode()


def _download_doc(os_: str, arch: str, data: bytes) -> dict:
    filename = f"terraform-provider-null_3.2.1_{os_}_{arch}.zip"
    return {
        "os": os_,
        "arch": arch,
        "filename": filename,
        "download_url": f"/files/{filename}",
        "shasums_url": "/files/SHA256SUMS",
        "shasums_signature_url": "/files/SHA256SUMS.sig",
        "shasum": _sha(data),
    }


def _upstream(binaries: dict[tuple[str, str], bytes], missing: set[tuple[str, str]] = frozenset()):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/terraform.json":
            return httpx.Response(200, json={"providers.v1": "/v1/providers/"})
        for (os_, arch), data in binaries.items():
            if path == f"/v1/providers/hashicorp/null/3.2.1/download/{os_}/{arch}":
                if (os_, arch) in missing:
                    return httpx.Response(404)
                return httpx.Response(200, json=_download_doc(os_, arch, _clean(data)))
            if path == f"/files/terraform-provider-null_3.2.1_{os_}_{arch}.zip":
                return httpx.Response(200, content=data)
        return httpx.Response(404)

    return UpstreamRegistryClient(BASE, transport=httpx.MockTransport(handler))


def _clean(data: bytes) -> bytes:
    # Tampered binaries are advertised with the checksum of the genuine one
    return data.removeprefix(b"tampered ")


@pytest.fixture
def store(tmp_path):
    return FilesystemStore(root_dir=str(tmp_path), hmac_secret="s")


@pytest.fixture
def db():
    result = MagicMock()
    result.scalars.return_value.first.return_value = None
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    session.flush = AsyncMock()
    return session


@pytest.fixture
def dispatcher():
    d = MagicMock()
    d.submit.return_value = True
    return d


@pytest.fixture
def ctx(store, db, dispatcher):
    @asynccontextmanager
    async def session():
        yield db

    return SimpleNamespace(
        session=session,
        storage=store,
        dispatcher=dispatcher,
        settings=SimpleNamespace(
            mirror=SimpleNamespace(
                default_org="default",
                request_timeout_seconds=5,
                download_timeout_seconds=5,
                check_interval_seconds=1,
            )
        ),
    )


@pytest.fixture
def target():
    return _ProviderTarget(
        mirror_id=uuid.uuid4(),
        org_name="default",
        namespace="hashicorp",
        name="null",
        provider_id=uuid.uuid4(),
        mirrored_provider_id=uuid.uuid4(),
    )


def _version_info() -> ProviderVersionInfo:
    return ProviderVersionInfo(
        version="3.2.1",
        protocols=["5.0"],
        platforms=[PlatformRef("linux", "amd64"), PlatformRef("darwin", "arm64")],
    )


@patch(f"{SERVICE}._record_mirrored_version", new_callable=AsyncMock)
@patch(f"{SERVICE}._prepare_release", new_callable=AsyncMock)
@patch(f"{SERVICE}._platform_uploaded", new_callable=AsyncMock, return_value=False)
class TestSyncVersion:
    async def test_syncs_every_platform(
        self, mock_uploaded, mock_release, mock_record, ctx, store, target
    ):
        version_id = uuid.uuid4()
        mock_release.return_value = _Release(version_id=version_id, shasums=SHASUMS)
        outcome = _ProviderOutcome("hashicorp", "null")
        mirror = SimpleNamespace(platform_filter=None)

        async with _upstream({("linux", "amd64"): LINUX_ZIP, ("darwin", "arm64"): DARWIN_ZIP}) as up:
            await MirrorSyncService(ctx)._sync_version(up, mirror, target, _version_info(), outcome)

        assert outcome.platforms_synced == 2
        assert outcome.errors == []
        key = provider_binary_key("default", "hashicorp", "null", "3.2.1", "linux", "amd64")
        assert await store.get(key) == LINUX_ZIP
        mock_release.assert_awaited_once()
        mock_record.assert_awaited_once_with(target, "3.2.1", version_id)

    async def test_platform_failure_is_isolated(
        self, mock_uploaded, mock_release, mock_record, ctx, store, target
    ):
        mock_release.return_value = _Release(version_id=uuid.uuid4(), shasums=SHASUMS)
        outcome = _ProviderOutcome("hashicorp", "null")
        mirror = SimpleNamespace(platform_filter=None)
        binaries = {("linux", "amd64"): LINUX_ZIP, ("darwin", "arm64"): DARWIN_ZIP}

        async with _upstream(binaries, missing={("linux", "amd64")}) as up:
            await MirrorSyncService(ctx)._sync_version(up, mirror, target, _version_info(), outcome)

        assert outcome.platforms_failed == 1
        assert outcome.platforms_synced == 1
        assert "linux_amd64" in outcome.errors[0]
        darwin = provider_binary_key("default", "hashicorp", "null", "3.2.1", "darwin", "arm64")
        assert await store.exists(darwin)
        mock_record.assert_awaited_once()

    async def test_checksum_mismatch_discards_binary(
        self, mock_uploaded, mock_release, mock_record, ctx, store, target
    ):
        mock_release.return_value = _Release(version_id=uuid.uuid4(), shasums=SHASUMS)
        outcome = _ProviderOutcome("hashicorp", "null")
        mirror = SimpleNamespace(platform_filter=["linux/amd64"])

        async with _upstream({("linux", "amd64"): b"tampered " + LINUX_ZIP}) as up:
            await MirrorSyncService(ctx)._sync_version(up, mirror, target, _version_info(), outcome)

        assert outcome.platforms_failed == 1
        assert "does not match SHA256SUMS" in outcome.errors[0]
        key = provider_binary_key("default", "hashicorp", "null", "3.2.1", "linux", "amd64")
        assert not await store.exists(key)
        mock_record.assert_not_awaited()

    async def test_bad_signature_fails_every_platform_once(
        self, mock_uploaded, mock_release, mock_record, ctx, target
    ):
        mock_release.side_effect = SignatureVerificationError("bad signature")
        outcome = _ProviderOutcome("hashicorp", "null")
        mirror = SimpleNamespace(platform_filter=None)

        async with _upstream({("linux", "amd64"): LINUX_ZIP, ("darwin", "arm64"): DARWIN_ZIP}) as up:
            await MirrorSyncService(ctx)._sync_version(up, mirror, target, _version_info(), outcome)

        assert outcome.platforms_failed == 2
        mock_release.assert_awaited_once()
        mock_record.assert_not_awaited()

    async def test_uploaded_platforms_are_skipped(
        self, mock_uploaded, mock_release, mock_record, ctx, target
    ):
        mock_uploaded.return_value = True
        outcome = _ProviderOutcome("hashicorp", "null")
        mirror = SimpleNamespace(platform_filter=None)

        async with _upstream({}) as up:
            await MirrorSyncService(ctx)._sync_version(up, mirror, target, _version_info(), outcome)

        assert outcome.platforms_skipped == 2
        mock_release.assert_not_awaited()


@patch(f"{SERVICE}._finish_history", new_callable=AsyncMock)
@patch(f"{SERVICE}._start_history", new_callable=AsyncMock)
@patch(f"{SERVICE}._run", new_callable=AsyncMock)
class TestSyncMirror:
    async def test_all_synced_is_success(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        mock_run.return_value = [_ProviderOutcome("hashicorp", "null")]

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        args = mock_finish.await_args.args
        assert args[2] == "success"
        assert args[3:5] == (1, 0)
        assert args[7] == "success"

    async def test_partial_failure(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        broken = _ProviderOutcome("hashicorp", "aws", status="failed", errors=["aws: boom"])
        mock_run.return_value = [_ProviderOutcome("hashicorp", "null"), broken]

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        args = mock_finish.await_args.args
        assert args[2] == "success"
        assert args[3:5] == (1, 1)
        assert args[5] == "aws: boom"
        assert args[6]["partial"] is True
        assert args[7] == "partial"

    async def test_everything_failed(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        mock_run.return_value = [
            _ProviderOutcome("hashicorp", "aws", status="failed", errors=["aws: boom"])
        ]

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        args = mock_finish.await_args.args
        assert args[2] == "failed"
        assert args[7] == "failed"

    async def test_skipped_providers_do_not_fail(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        mock_run.return_value = [
            _ProviderOutcome("community", "x", status="skipped", errors=["denied"])
        ]

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        assert mock_finish.await_args.args[2] == "success"

    async def test_upstream_error_fails_run(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        mock_run.side_effect = UpstreamRegistryError("upstream returned 503", 503)

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        args = mock_finish.await_args.args
        assert args[2] == "failed"
        assert args[5] == "upstream returned 503"

    async def test_invalid_filter_fails_run(self, mock_run, mock_start, mock_finish, ctx):
        mock_start.return_value = uuid.uuid4()
        mock_run.side_effect = InvalidVersionFilter("invalid latest filter: latest:0")

        await MirrorSyncService(ctx).sync_mirror(uuid.uuid4())

        assert mock_finish.await_args.args[2] == "failed"

    async def test_concurrent_run_rejected(self, mock_run, mock_start, mock_finish, ctx):
        mirror_id = uuid.uuid4()
        mock_start.return_value = uuid.uuid4()
        gate = asyncio.Event()

        async def slow_run(*args):
            await gate.wait()
            return []

        mock_run.side_effect = slow_run
        service = MirrorSyncService(ctx)
        first = asyncio.create_task(service.sync_mirror(mirror_id))
        await asyncio.sleep(0)

        second_history = uuid.uuid4()
        with pytest.raises(MirrorSyncInProgress):
            await service.sync_mirror(mirror_id, history_id=second_history)
        cancelled = mock_finish.await_args.args
        assert cancelled[1] == second_history
        assert cancelled[2] == "cancelled"
        assert cancelled[7] is None

        gate.set()
        await first

    async def test_trigger_refused_by_full_queue(
        self, mock_run, mock_start, mock_finish, ctx, dispatcher
    ):
        history_id = uuid.uuid4()
        mock_start.return_value = history_id
        dispatcher.submit.return_value = False

        assert await MirrorSyncService(ctx).trigger_sync(uuid.uuid4()) == history_id
        args = mock_finish.await_args.args
        assert args[2] == "failed"
        assert args[5] == "sync queue is full"


WINDOWS_ZIP = b"windows provider binary"
THREE_PLATFORM_SHASUMS = (
    f"{_sha(LINUX_ZIP)}  terraform-provider-null_3.2.1_linux_amd64.zip\n"
    f"{_sha(DARWIN_ZIP)}  terraform-provider-null_3.2.1_darwin_arm64.zip\n"
    f"{_sha(WINDOWS_ZIP)}  terraform-provider-null_3.2.1_windows_amd64.zip\n"
).encode()


def _registry_transport(binaries: dict[tuple[str, str], bytes]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/terraform.json":
            return httpx.Response(200, json={"providers.v1": "/v1/providers/"})
        if path == "/v1/providers/hashicorp/null/versions":
            platforms = [{"os": os_, "arch": arch} for os_, arch in binaries]
            return httpx.Response(
                200,
                json={"versions": [{"version": "3.2.1", "protocols": ["5.0"], "platforms": platforms}]},
            )
        for (os_, arch), data in binaries.items():
            if path == f"/v1/providers/hashicorp/null/3.2.1/download/{os_}/{arch}":
                return httpx.Response(200, json=_download_doc(os_, arch, _clean(data)))
            if path == f"/files/terraform-provider-null_3.2.1_{os_}_{arch}.zip":
                return httpx.Response(200, content=data)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@patch(f"{SERVICE}._finish_history", new_callable=AsyncMock)
@patch(f"{SERVICE}._start_history", new_callable=AsyncMock)
@patch(f"{SERVICE}._record_mirrored_version", new_callable=AsyncMock)
@patch(f"{SERVICE}._prepare_release", new_callable=AsyncMock)
@patch(f"{SERVICE}._platform_uploaded", new_callable=AsyncMock, return_value=False)
@patch(f"{SERVICE}._ensure_provider", new_callable=AsyncMock)
@patch("tfregistry.services.mirror_sync_service.check_approval", new_callable=AsyncMock)
@patch("tfregistry.services.mirror_sync_service.evaluate_policies", new_callable=AsyncMock)
class TestProviderWithFailedPlatform:
    async def test_one_bad_platform_records_partial_run(
        self,
        mock_policies,
        mock_approval,
        mock_ensure,
        mock_uploaded,
        mock_release,
        mock_record,
        mock_start,
        mock_finish,
        ctx,
        db,
        store,
        target,
    ):
        mirror = SimpleNamespace(
            id=target.mirror_id,
            name="hashicorp",
            upstream_registry_url=BASE,
            org_name="default",
            namespace_filter=["hashicorp"],
            provider_filter=["null"],
            version_filter=None,
            platform_filter=None,
        )
        db.get = AsyncMock(return_value=mirror)
        mock_approval.return_value = True
        mock_ensure.return_value = target
        mock_release.return_value = _Release(version_id=uuid.uuid4(), shasums=THREE_PLATFORM_SHASUMS)
        mock_start.return_value = uuid.uuid4()
        transport = _registry_transport(
            {
                ("linux", "amd64"): b"tampered " + LINUX_ZIP,
                ("darwin", "arm64"): DARWIN_ZIP,
                ("windows", "amd64"): WINDOWS_ZIP,
            }
        )

        await MirrorSyncService(ctx, transport=transport).sync_mirror(target.mirror_id)

        args = mock_finish.await_args.args
        assert args[2] == "success"
        assert args[3:5] == (1, 0)
        assert args[6]["partial"] is True
        assert args[7] == "partial"
        provider = args[6]["providers"][0]
        assert provider["status"] == "partial"
        assert provider["platforms_synced"] == 2
        assert provider["platforms_failed"] == 1
        assert "linux_amd64" in args[5]
        linux = provider_binary_key("default", "hashicorp", "null", "3.2.1", "linux", "amd64")
        windows = provider_binary_key("default", "hashicorp", "null", "3.2.1", "windows", "amd64")
        assert not await store.exists(linux)
        assert await store.get(windows) == WINDOWS_ZIP
        mock_record.assert_awaited_once()
