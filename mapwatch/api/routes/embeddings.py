"""Embedding backfill and coverage routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mapwatch.api.deps import get_matching_service
from mapwatch.match.service import MatchingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/embeddings", tags=["embeddings"])


@router.post("/update")
async def update_embeddings(
    source: Optional[str] = None,
    limit: int = Query(50, ge=1, le=1000),
    dry_run: bool = False,
    service: MatchingService = Depends(get_matching_service),
):
    """Generate embeddings for products missing them."""
    try:
        result = await service.backfill_embeddings(source=source, limit=limit, dry_run=dry_run)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"success": True, **result}


@router.get("/coverage")
async def embedding_coverage(service: MatchingService = Depends(get_matching_service)):
    """Embedding coverage statistics."""
    return await service.embedding_coverage()
