"""
Tests for the filesystem storage backend.

Includes the presigned download endpoint via an ASGI test client.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import AsyncIterator
from urllib.parse import urlparse

import httpx
import pytest
from fastapi import FastAPI

from tfregistry.storage.filesystem import FilesystemStore
from tfregistry.storage.filesystem_routes import router, set_filesystem_store
from tfregistry.storage.protocol import (
    ObjectNotFoundError,
    ObjectStoreError,
    SizeMismatchError,
)


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestFilesystemStore:
    async def test_put_and_get(self, fs_store: FilesystemStore) -> None:
        data = b"hello world"
        meta = await fs_store.put("test/file.txt", data, content_type="text/plain")
        assert meta.key == "test/file.txt"
        assert meta.size_bytes == len(data)
        assert meta.content_type == "text/plain"
        assert meta.checksum == hashlib.sha256(data).hexdigest()

        assert await fs_store.get("test/file.txt") == data

    async def test_put_stream_hashes_while_writing(self, fs_store: FilesystemStore) -> None:
        meta = await fs_store.put_stream("bin/a.zip", _chunks(b"abc", b"def", b"ghi"))
        assert meta.size_bytes == 9
        assert meta.checksum == hashlib.sha256(b"abcdefghi").hexdigest()
        assert await fs_store.get("bin/a.zip") == b"abcdefghi"

    async def test_put_stream_size_mismatch_leaves_nothing(
        self, fs_store: FilesystemStore
    ) -> None:
        with pytest.raises(SizeMismatchError):
            await fs_store.put_stream("bin/short.zip", _chunks(b"abc"), expected_size=10)
        assert not await fs_store.exists("bin/short.zip")
        leftovers = [p for p in (fs_store.root_dir / "bin").iterdir()]
        assert leftovers == []

    async def test_failed_stream_cleans_temp_file(self, fs_store: FilesystemStore) -> None:
        async def broken() -> AsyncIterator[bytes]:
            yield b"partial"
            raise RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await fs_store.put_stream("bin/broken.zip", broken())
        assert not await fs_store.exists("bin/broken.zip")
        assert list((fs_store.root_dir / "bin").iterdir()) == []

    async def test_iter_bytes(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("big.bin", b"x" * 1000)
        chunks = [c async for c in fs_store.iter_bytes("big.bin", chunk_size=300)]
        assert [len(c) for c in chunks] == [300, 300, 300, 100]

    async def test_get_nonexistent_raises(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(ObjectNotFoundError):
            await fs_store.get("nonexistent/key")

    async def test_delete_existing(self, fs_store: FilesystemStore) -> None:
        await fs_store.put("to-delete.txt", b"data")
        assert await fs_store.exists("to-delete.txt")

        await fs_store.delete("to-delete.txt")
        assert not await fs_store.exists("to-delete.txt")

    async def test_delete_nonexistent_is_idempotent(self, fs_store: FilesystemStore) -> None:
        await fs_store.delete("never-existed.txt")  # Should not raise

    async def test_head(self, fs_store: FilesystemStore) -> None:
        await fs_store.put(
            "meta-test.bin", b"\x00\x01\x02", content_type="application/octet-stream"
        )
        meta = await fs_store.head("meta-test.bin")
        assert meta.size_bytes == 3
        assert meta.content_type == "application/octet-stream"
        assert meta.checksum == hashlib.sha256(b"\x00\x01\x02").hexdigest()

    async def test_head_nonexistent_raises(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(ObjectNotFoundError):
            await fs_store.head("nonexistent")

    async def test_put_with_metadata(self, fs_store: FilesystemStore) -> None:
        metadata = {"commit": "abc123", "tag": "v1.0.0"}
        await fs_store.put("with-meta.txt", b"data", metadata=metadata)
        meta = await fs_store.head("with-meta.txt")
        assert meta.metadata == metadata

    async def test_path_traversal_rejected(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(ObjectStoreError):
            await fs_store.put("../escape.txt", b"nope")

    async def test_absolute_path_rejected(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(ObjectStoreError):
            await fs_store.put("/etc/passwd", b"nope")

    async def test_meta_sidecar_key_rejected(self, fs_store: FilesystemStore) -> None:
        with pytest.raises(ObjectStoreError):
            await fs_store.put("file.txt.meta", b"nope")


class TestFilesystemPresignedURLs:
    async def test_presigned_get_url(self, fs_store: FilesystemStore) -> None:
        url = await fs_store.presigned_get_url("test/key")
        assert url.url.startswith("http://localhost:8000/api/v1/storage/get/")
        assert "sig=" in url.url
        assert "expires=" in url.url
        assert url.expires_at

    async def test_signature_verification(self, fs_store: FilesystemStore) -> None:
        expires = int(time.time()) + 3600
        sig = fs_store._sign("GET", "test/key", expires)
        assert fs_store.verify_signature("GET", "test/key", str(expires), sig)

    async def test_expired_signature_rejected(self, fs_store: FilesystemStore) -> None:
        expires = int(time.time()) - 10  # Already expired
        sig = fs_store._sign("GET", "test/key", expires)
        assert not fs_store.verify_signature("GET", "test/key", str(expires), sig)

    async def test_other_key_rejected(self, fs_store: FilesystemStore) -> None:
        expires = int(time.time()) + 3600
        sig = fs_store._sign("GET", "test/key", expires)
        assert not fs_store.verify_signature("GET", "test/other", str(expires), sig)


class TestFilesystemRoutes:
    """Test the presigned download endpoint."""

    @pytest.fixture
    def app(self, fs_store: FilesystemStore) -> FastAPI:
        test_app = FastAPI()
        set_filesystem_store(fs_store)
        test_app.include_router(router, prefix="/api/v1")
        return test_app

    async def test_get_via_presigned_url(self, app: FastAPI, fs_store: FilesystemStore) -> None:
        await fs_store.put("modules/ns/vpc/aws/vpc-1.0.0.tar.gz", b"tarball bytes")
        get_url = await fs_store.presigned_get_url("modules/ns/vpc/aws/vpc-1.0.0.tar.gz")
        parsed = urlparse(get_url.url)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.get(parsed.path + "?" + parsed.query)

        assert resp.status_code == 200
        assert resp.content == b"tarball bytes"
        assert resp.headers["etag"] == f'"{hashlib.sha256(b"tarball bytes").hexdigest()}"'

    async def test_get_invalid_signature(self, app: FastAPI) -> None:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.get("/api/v1/storage/get/test.txt?expires=9999999999&sig=invalid")
            assert resp.status_code == 403

    async def test_get_nonexistent_object(self, app: FastAPI, fs_store: FilesystemStore) -> None:
        get_url = await fs_store.presigned_get_url("does-not-exist.txt")
        parsed = urlparse(get_url.url)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.get(parsed.path + "?" + parsed.query)
            assert resp.status_code == 404
