"""Shared dependencies for the ingestion pipeline.

One context is assembled in the application lifespan and passed to the
webhook ingestor, the publisher, the mirror sync engine and the tag
immutability monitor.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tfregistry.config import Settings
from tfregistry.scm.connectors import ConnectorRegistry
from tfregistry.services.background import TaskDispatcher
from tfregistry.services.encryption_service import TokenCipher
from tfregistry.storage.protocol import ObjectStore


@dataclass
class IngestionContext:
    cipher: TokenCipher
    connectors: ConnectorRegistry
    storage: ObjectStore
    session_factory: async_sessionmaker[AsyncSession]
    dispatcher: TaskDispatcher
    settings: Settings

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Unit of work: commit on success, roll back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
