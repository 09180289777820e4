"""FastAPI dependencies."""

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from mapwatch.ai.embedding_service import EmbeddingService, build_embedding_provider
from mapwatch.db.catalog_store import SqlCatalogStore
from mapwatch.db.match_store import SqlMatchStore
from mapwatch.db.session import get_db
from mapwatch.match.service import MatchingService
from mapwatch.worker.run_lock import run_lock

_embedding_service: Optional[EmbeddingService] = None


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def get_embedding_service() -> EmbeddingService:
    """Process-wide embedding service (shares the embedding cache)."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService(build_embedding_provider())
    return _embedding_service


async def get_matching_service(
    db: AsyncSession = Depends(get_database),
    embedding_service: EmbeddingService = Depends(get_embedding_service),
) -> MatchingService:
    """Matching service bound to the request's database session."""
    return MatchingService(
        catalog_store=SqlCatalogStore(db),
        match_store=SqlMatchStore(db),
        embedding_service=embedding_service,
        run_lock=run_lock,
    )
