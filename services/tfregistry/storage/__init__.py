"""
Artifact storage for tfregistry.

Module tarballs and mirrored provider binaries land in one process-wide
object store. init_storage() / close_storage() bracket the app lifespan.
"""

from __future__ import annotations

from tfregistry.config import StorageConfig, settings
from tfregistry.logging_config import get_logger
from tfregistry.storage.filesystem import FilesystemStore
from tfregistry.storage.filesystem_routes import set_filesystem_store
from tfregistry.storage.protocol import ObjectStore

logger = get_logger(__name__)

_store: ObjectStore | None = None


def build_store(cfg: StorageConfig) -> FilesystemStore:
    fs = cfg.filesystem
    return FilesystemStore(
        root_dir=fs.root_dir,
        hmac_secret=fs.hmac_secret,
        base_url=fs.base_url,
        presigned_url_expiry_seconds=fs.presigned_url_expiry_seconds,
    )


async def init_storage(cfg: StorageConfig | None = None) -> ObjectStore:
    """Create the store and expose it to the signed-download route."""
    global _store  # noqa: PLW0603
    cfg = cfg or settings.storage
    store = build_store(cfg)
    set_filesystem_store(store)
    _store = store
    logger.info("Storage initialized", backend=cfg.backend.value, root_dir=cfg.filesystem.root_dir)
    return store


async def close_storage() -> None:
    global _store  # noqa: PLW0603
    if _store is None:
        return
    await _store.close()
    set_filesystem_store(None)
    _store = None
    logger.info("Storage closed")


def get_storage_or_none() -> ObjectStore | None:
    """Current store, or None before startup (readiness checks)."""
    return _store
