"""Product matching and MAP violation routes."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from mapwatch.api.deps import get_matching_service
from mapwatch.match.errors import (
    CatalogUnavailableError,
    DuplicateMatchError,
    MatchingAlreadyRunningError,
    MatchNotFoundError,
    ProductNotFoundError,
)
from mapwatch.match.service import MatchingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products/match", tags=["matching"])


class RunMatchingRequest(BaseModel):
    confidence_threshold: Optional[float] = Field(None, ge=0.1, le=1.0)


class RunSummaryResponse(BaseModel):
    success: bool = True
    run_id: str
    matches_created: int
    violations_detected: int
    reference_products_analyzed: int
    competitor_products_analyzed: int
    products_without_embeddings: int
    persist_failures: int
    confidence_threshold: float


class ProductSummary(BaseModel):
    id: int
    external_id: str
    source: str
    title: str
    vendor: str | None
    product_type: str | None
    price: float | None
    url: str | None

    class Config:
        from_attributes = True


class MatchResponse(BaseModel):
    id: int
    source: str
    overall_score: float
    title_similarity: float
    brand_similarity: float
    type_similarity: float
    price_similarity: float
    embedding_similarity: float | None
    confidence: str
    price_difference: float | None
    price_difference_percent: float | None
    is_map_violation: bool
    violation_amount: float | None
    violation_severity: float | None
    is_manual_match: bool
    is_rejected: bool
    first_violation_date: datetime | None
    last_checked: datetime | None
    idc_product: ProductSummary
    competitor_product: ProductSummary

    class Config:
        from_attributes = True


class MatchListResponse(BaseModel):
    matches: List[MatchResponse]
    total: int
    page: int
    limit: int


class WorstOffender(BaseModel):
    source: str
    violations: int


class CompetitorStatus(BaseModel):
    source: str
    products_tracked: int
    matches: int
    avg_price_difference: float
    last_scraped_at: datetime | None


class ViolationStatsResponse(BaseModel):
    products_monitored: int
    competitors_tracked: int
    map_violations: int
    revenue_at_risk: float
    worst_offender: WorstOffender | None
    violations_by_source: Dict[str, int]
    competitor_status: List[CompetitorStatus]
    min_confidence: float


class ManualMatchRequest(BaseModel):
    idc_product_id: int
    competitor_product_id: int
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


@router.post("", response_model=RunSummaryResponse)
async def run_matching(
    request: RunMatchingRequest,
    service: MatchingService = Depends(get_matching_service),
):
    """
    Run product matching and MAP violation detection.

    Replaces every automatic match with the result of this run.
    """
    try:
        summary = await service.run(request.confidence_threshold)
    except MatchingAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RunSummaryResponse(**summary.to_dict())


@router.get("", response_model=MatchListResponse)
async def list_matches(
    min_confidence: float = Query(0.7, ge=0.0, le=1.0),
    source: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    service: MatchingService = Depends(get_matching_service),
):
    """List stored matches, violations first."""
    matches, total = await service.list_matches(
        min_confidence=min_confidence,
        source=source,
        page=page,
        limit=limit,
    )
    return MatchListResponse(
        matches=[MatchResponse.model_validate(m) for m in matches],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/violations", response_model=List[MatchResponse])
async def list_violations(service: MatchingService = Depends(get_matching_service)):
    """List active (non-rejected) MAP violations, most severe first."""
    return await service.list_violations()


@router.get("/stats", response_model=ViolationStatsResponse)
async def violation_stats(
    min_confidence: float = Query(0.8, ge=0.0, le=1.0),
    service: MatchingService = Depends(get_matching_service),
):
    """MAP violation counts, revenue at risk and per-competitor status."""
    return await service.violation_stats(min_confidence=min_confidence)


@router.post("/manual", response_model=MatchResponse, status_code=201)
async def create_manual_match(
    request: ManualMatchRequest,
    service: MatchingService = Depends(get_matching_service),
):
    """Create a manual match between a reference and a competitor product."""
    try:
        return await service.create_manual_match(
            request.idc_product_id,
            request.competitor_product_id,
            confidence=request.confidence,
        )
    except ProductNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateMatchError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/manual", response_model=List[MatchResponse])
async def list_manual_matches(service: MatchingService = Depends(get_matching_service)):
    """List manual matches."""
    return await service.list_manual_matches()


@router.delete("/manual/{match_id}", status_code=204)
async def delete_manual_match(
    match_id: int,
    service: MatchingService = Depends(get_matching_service),
):
    """Delete a manual match."""
    try:
        await service.delete_manual_match(match_id)
    except MatchNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{match_id}/reject", response_model=MatchResponse)
async def reject_match(
    match_id: int,
    service: MatchingService = Depends(get_matching_service),
):
    """Mark a match as a false positive."""
    try:
        return await service.reject_match(match_id)
    except MatchNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
