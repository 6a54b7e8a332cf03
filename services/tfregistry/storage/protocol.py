"""
Object storage protocol and types for tfregistry.

Defines the ObjectStore Protocol that storage backends must satisfy,
along with shared data types and exceptions. Registry artifacts are
written once and never overwritten, so every write reports the SHA-256
of the bytes actually stored.
"""

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

# --- Data Types ---


@dataclass(frozen=True)
class ObjectMeta:
    """Metadata about a stored object."""

    key: str
    size_bytes: int
    content_type: str
    checksum: str  # hex SHA-256 of the stored bytes
    last_modified: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PresignedURL:
    """A time-limited URL for direct client download."""

    url: str
    expires_at: datetime
    headers: dict[str, str] = field(default_factory=dict)


# --- Exceptions ---


class ObjectStoreError(Exception):
    """Base exception for object store operations."""


class ObjectNotFoundError(ObjectStoreError):
    """Raised when a requested object does not exist."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Object not found: {key}")


class SizeMismatchError(ObjectStoreError):
    """Raised when a streamed upload does not match its declared size."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        self.key = key
        super().__init__(f"Object {key}: expected {expected} bytes, received {actual}")


# --- Protocol ---


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol defining the object storage interface.

    All methods are async. Implementations satisfy this interface
    structurally; no inheritance required.
    """

    backend_name: str

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> ObjectMeta:
        """Store an object held in memory."""
        ...

    async def put_stream(
        self,
        key: str,
        chunks: AsyncIterable[bytes],
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
        expected_size: int | None = None,
    ) -> ObjectMeta:
        """Store an object from an async byte stream.

        The object becomes visible only once fully written. The returned
        checksum is computed over the bytes as they were written.

        Raises:
            SizeMismatchError: If ``expected_size`` is given and differs.
        """
        ...

    async def get(self, key: str) -> bytes:
        """Retrieve an object's content.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    def iter_bytes(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Stream an object's content in chunks.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete an object. Idempotent."""
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def head(self, key: str) -> ObjectMeta:
        """Get object metadata without returning the content.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """
        ...

    async def presigned_get_url(
        self,
        key: str,
        expiry_seconds: int | None = None,
    ) -> PresignedURL:
        """Generate a time-limited download URL."""
        ...

    async def close(self) -> None:
        """Release any resources held by the backend."""
        ...
