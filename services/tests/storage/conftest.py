"""
Shared fixtures for storage tests.
"""

from __future__ import annotations

import tempfile
from collections.abc import AsyncGenerator

import pytest_asyncio

from tfregistry.storage.filesystem import FilesystemStore


@pytest_asyncio.fixture
async def fs_store() -> AsyncGenerator[FilesystemStore]:
    """Create a FilesystemStore with a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = FilesystemStore(
            root_dir=tmpdir,
            hmac_secret="test-secret-key-for-hmac-signing",
            base_url="http://localhost:8000",
            presigned_url_expiry_seconds=3600,
        )
        yield store
        await store.close()
