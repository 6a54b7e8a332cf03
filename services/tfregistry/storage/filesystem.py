"""
Filesystem storage backend for tfregistry.

Uses aiofiles for async I/O against a local directory. Presigned URLs are
HMAC-SHA256 signed tokens that point back at the API server's own
download endpoint.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
import urllib.parse
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from tfregistry.logging_config import get_logger
from tfregistry.storage.protocol import (
    ObjectMeta,
    ObjectNotFoundError,
    ObjectStoreError,
    PresignedURL,
    SizeMismatchError,
)

logger = get_logger(__name__)

META_SUFFIX = ".meta"
_READ_CHUNK = 64 * 1024


class FilesystemStore:
    """Object store backed by the local filesystem."""

    backend_name = "filesystem"

    def __init__(
        self,
        root_dir: str,
        hmac_secret: str = "",
        base_url: str = "http://localhost:8000",
        presigned_url_expiry_seconds: int = 3600,
    ) -> None:
        self._root = Path(root_dir)
        if not hmac_secret:
            # Download URLs signed with this secret die with the process
            logger.warning("No storage HMAC secret configured, using an ephemeral one")
        self._hmac_secret = hmac_secret or secrets.token_hex(32)
        self._base_url = base_url.rstrip("/")
        self._default_expiry = presigned_url_expiry_seconds

        self._root.mkdir(parents=True, exist_ok=True)
        logger.info("Filesystem store initialized", root_dir=str(self._root))

    def _full_path(self, key: str) -> Path:
        """Resolve key to a full filesystem path, preventing path traversal."""
        clean = Path(key)
        if not key or clean.is_absolute() or ".." in clean.parts:
            raise ObjectStoreError(f"Invalid key: {key}")
        if clean.name.endswith(META_SUFFIX):
            raise ObjectStoreError(f"Invalid key: {key}")
        return self._root / clean

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return Path(str(path) + META_SUFFIX)

    async def _write_meta(
        self, path: Path, content_type: str, metadata: dict[str, str] | None
    ) -> None:
        meta_content = content_type
        if metadata:
            meta_content += "\n" + "\n".join(f"{k}={v}" for k, v in metadata.items())
        async with aiofiles.open(self._meta_path(path), "w") as f:
            await f.write(meta_content)

    async def _read_meta(self, path: Path) -> tuple[str, dict[str, str]]:
        content_type = "application/octet-stream"
        metadata: dict[str, str] = {}
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return content_type, metadata
        async with aiofiles.open(meta_path) as f:
            lines = (await f.read()).strip().split("\n")
        if lines and lines[0]:
            content_type = lines[0]
        for line in lines[1:]:
            if "=" in line:
                k, v = line.split("=", 1)
                metadata[k] = v
        return content_type, metadata

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ObjectMeta:
        async def _one_chunk() -> AsyncIterator[bytes]:
            yield data

        return await self.put_stream(key, _one_chunk(), content_type, metadata, len(data))

    async def put_stream(
        self,
        key: str,
        chunks: AsyncIterable[bytes],
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
        expected_size: int | None = None,
    ) -> ObjectMeta:
        path = self._full_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write beside the target and rename so readers never see partial objects
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")

        digest = hashlib.sha256()
        size = 0
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in chunks:
                    digest.update(chunk)
                    size += len(chunk)
                    await f.write(chunk)
            if expected_size is not None and size != expected_size:
                raise SizeMismatchError(key, expected_size, size)
            await self._write_meta(path, content_type, metadata)
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            if tmp_path.exists():
                await aiofiles.os.remove(tmp_path)
            raise

        stat = await aiofiles.os.stat(path)
        return ObjectMeta(
            key=key,
            size_bytes=size,
            content_type=content_type,
            checksum=digest.hexdigest(),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            metadata=metadata or {},
        )

    async def get(self, key: str) -> bytes:
        path = self._full_path(key)
        if not path.exists():
            raise ObjectNotFoundError(key)

        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def iter_bytes(self, key: str, chunk_size: int = _READ_CHUNK) -> AsyncIterator[bytes]:
        path = self._full_path(key)
        if not path.exists():
            raise ObjectNotFoundError(key)

        async with aiofiles.open(path, "rb") as f:
            while chunk := await f.read(chunk_size):
                yield chunk

    async def delete(self, key: str) -> None:
        path = self._full_path(key)
        meta_path = self._meta_path(path)

        if path.exists():
            await aiofiles.os.remove(path)
        if meta_path.exists():
            await aiofiles.os.remove(meta_path)

    async def exists(self, key: str) -> bool:
        return self._full_path(key).is_file()

    async def head(self, key: str) -> ObjectMeta:
        path = self._full_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)

        stat = await aiofiles.os.stat(path)
        content_type, metadata = await self._read_meta(path)

        digest = hashlib.sha256()
        async for chunk in self.iter_bytes(key):
            digest.update(chunk)

        return ObjectMeta(
            key=key,
            size_bytes=stat.st_size,
            content_type=content_type,
            checksum=digest.hexdigest(),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            metadata=metadata,
        )

    def _sign(self, operation: str, key: str, expires: int) -> str:
        """Create an HMAC-SHA256 signature for a presigned URL."""
        message = f"{operation}:{key}:{expires}"
        return hmac.new(
            self._hmac_secret.encode(),
            message.encode(),
            hashlib.sha256,
        ).hexdigest()

    def verify_signature(self, operation: str, key: str, expires: str, signature: str) -> bool:
        """Verify an HMAC-SHA256 signature from a presigned URL."""
        try:
            expires_int = int(expires)
        except ValueError:
            return False

        if time.time() > expires_int:
            return False

        expected = self._sign(operation, key, expires_int)
        return hmac.compare_digest(expected, signature)

    async def presigned_get_url(
        self,
        key: str,
        expiry_seconds: int | None = None,
    ) -> PresignedURL:
        expiry = expiry_seconds or self._default_expiry
        expires = int(time.time()) + expiry
        sig = self._sign("GET", key, expires)

        encoded_key = urllib.parse.quote(key, safe="")
        url = f"{self._base_url}/api/v1/storage/get/{encoded_key}?expires={expires}&sig={sig}"

        return PresignedURL(
            url=url,
            expires_at=datetime.fromtimestamp(expires, tz=UTC),
        )

    async def close(self) -> None:
        """No resources to release for filesystem backend."""

    @property
    def root_dir(self) -> Path:
        return self._root

