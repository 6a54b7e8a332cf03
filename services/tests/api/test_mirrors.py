"""Tests for the mirror administration endpoints."""

import uuid
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from httpx import ASGITransport, AsyncClient

from tfregistry.api.app import create_application
from tfregistry.api.dependencies import get_mirror_sync
from tfregistry.services.mirror_sync_service import (
    MirrorNotFound,
    MirrorStatus,
    MirrorSyncInProgress,
)

ADMIN = {"Authorization": "Bearer test-admin-token"}
MIRROR_ID = uuid.uuid4()


def _make_app(sync):
    app = create_application()
    app.dependency_overrides[get_mirror_sync] = lambda: sync
    return app


async def _request(app, method: str, path: str, **kwargs):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.request(method, path, **kwargs)


class TestAdminToken:
    async def test_missing_token(self):
        response = await _request(
            _make_app(MagicMock()), "POST", f"/api/v1/admin/mirrors/{MIRROR_ID}/sync"
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_wrong_token(self):
        response = await _request(
            _make_app(MagicMock()),
            "GET",
            f"/api/v1/admin/mirrors/{MIRROR_ID}/status",
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    @patch("tfregistry.api.dependencies.settings", SimpleNamespace(admin_token=""))
    async def test_disabled_when_unconfigured(self):
        response = await _request(
            _make_app(MagicMock()),
            "GET",
            f"/api/v1/admin/mirrors/{MIRROR_ID}/status",
            headers=ADMIN,
        )
        assert response.status_code == 404


class TestTriggerSync:
    async def test_accepted(self):
        history_id = uuid.uuid4()
        sync = MagicMock()
        sync.trigger_sync = AsyncMock(return_value=history_id)

        response = await _request(
            _make_app(sync),
            "POST",
            f"/api/v1/admin/mirrors/{MIRROR_ID}/sync",
            headers=ADMIN,
            json={"namespace": "hashicorp", "provider": "aws"},
        )

        assert response.status_code == 202
        assert response.json()["history_id"] == str(history_id)
        sync.trigger_sync.assert_awaited_once_with(MIRROR_ID, "hashicorp", "aws")

    async def test_without_body_syncs_everything(self):
        sync = MagicMock()
        sync.trigger_sync = AsyncMock(return_value=uuid.uuid4())

        response = await _request(
            _make_app(sync), "POST", f"/api/v1/admin/mirrors/{MIRROR_ID}/sync", headers=ADMIN
        )

        assert response.status_code == 202
        sync.trigger_sync.assert_awaited_once_with(MIRROR_ID, None, None)

    async def test_unknown_mirror(self):
        sync = MagicMock()
        sync.trigger_sync = AsyncMock(side_effect=MirrorNotFound(str(MIRROR_ID)))

        response = await _request(
            _make_app(sync), "POST", f"/api/v1/admin/mirrors/{MIRROR_ID}/sync", headers=ADMIN
        )

        assert response.status_code == 404

    async def test_already_running(self):
        sync = MagicMock()
        sync.trigger_sync = AsyncMock(side_effect=MirrorSyncInProgress(str(MIRROR_ID)))

        response = await _request(
            _make_app(sync), "POST", f"/api/v1/admin/mirrors/{MIRROR_ID}/sync", headers=ADMIN
        )

        assert response.status_code == 409


class TestMirrorStatus:
    async def test_status_payload(self):
        synced = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        sync = MagicMock()
        sync.get_status = AsyncMock(
            return_value=MirrorStatus(
                mirror_id=MIRROR_ID,
                name="public",
                enabled=True,
                upstream_registry_url="https://registry.terraform.io",
                last_sync_at=synced,
                last_sync_status="partial",
                last_sync_error=None,
                running=False,
                recent_history=[{"status": "success", "versions_synced": 3}],
            )
        )

        response = await _request(
            _make_app(sync), "GET", f"/api/v1/admin/mirrors/{MIRROR_ID}/status", headers=ADMIN
        )

        assert response.status_code == 200
        data = response.json()
        assert data["mirror_id"] == str(MIRROR_ID)
        assert data["last_sync_at"] == synced.isoformat()
        assert data["last_sync_status"] == "partial"
        assert data["recent_history"][0]["versions_synced"] == 3

    async def test_unknown_mirror(self):
        sync = MagicMock()
        sync.get_status = AsyncMock(side_effect=MirrorNotFound(str(MIRROR_ID)))

        response = await _request(
            _make_app(sync), "GET", f"/api/v1/admin/mirrors/{MIRROR_ID}/status", headers=ADMIN
        )

        assert response.status_code == 404
