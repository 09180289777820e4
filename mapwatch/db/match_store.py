"""SQLAlchemy-backed match store."""

import logging
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mapwatch.db.models import MapViolationHistory, ProductMatch
from mapwatch.match.base import MatchStore

logger = logging.getLogger(__name__)


def _match_query():
    # Refresh rows already in the identity map so both products get loaded
    return (
        select(ProductMatch)
        .options(
            selectinload(ProductMatch.idc_product),
            selectinload(ProductMatch.competitor_product),
        )
        .execution_options(populate_existing=True)
    )


class SqlMatchStore(MatchStore):
    """
    Match store over one AsyncSession.

    Writes stay in the session transaction until commit(); single inserts run
    inside a SAVEPOINT so a failing row does not abort the surrounding run.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def delete_automatic_matches(self) -> int:
        automatic_ids = select(ProductMatch.id).where(ProductMatch.is_manual_match.is_(False))

        # Detach the audit trail before the rows disappear
        await self.session.execute(
            update(MapViolationHistory)
            .where(MapViolationHistory.product_match_id.in_(automatic_ids))
            .values(product_match_id=None)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(
            delete(ProductMatch)
            .where(ProductMatch.is_manual_match.is_(False))
            .execution_options(synchronize_session="fetch")
        )
        deleted = result.rowcount or 0
        logger.info(f"Cleared {deleted} automatic product matches")
        return deleted

    async def insert_match(self, match: ProductMatch) -> ProductMatch:
        async with self.session.begin_nested():
            self.session.add(match)
            await self.session.flush()
        return match

    async def insert_violation_history(self, entry: MapViolationHistory) -> MapViolationHistory:
        async with self.session.begin_nested():
            self.session.add(entry)
            await self.session.flush()
        return entry

    async def get_match(self, match_id: int) -> Optional[ProductMatch]:
        result = await self.session.execute(_match_query().where(ProductMatch.id == match_id))
        return result.scalar_one_or_none()

    async def find_match(self, idc_product_id: int, competitor_product_id: int) -> Optional[ProductMatch]:
        result = await self.session.execute(
            _match_query().where(
                ProductMatch.idc_product_id == idc_product_id,
                ProductMatch.competitor_product_id == competitor_product_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_matches(
        self,
        min_confidence: float = 0.0,
        source: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[ProductMatch]:
        query = _match_query().where(ProductMatch.overall_score >= min_confidence)
        if source:
            query = query.where(ProductMatch.source == source)
        query = query.order_by(
            ProductMatch.is_map_violation.desc(),
            ProductMatch.overall_score.desc(),
            ProductMatch.id,
        ).offset(offset)
        if limit:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_matches(self, min_confidence: float = 0.0, source: Optional[str] = None) -> int:
        query = select(func.count(ProductMatch.id)).where(ProductMatch.overall_score >= min_confidence)
        if source:
            query = query.where(ProductMatch.source == source)
        return (await self.session.execute(query)).scalar_one()

    async def list_manual_matches(self) -> List[ProductMatch]:
        result = await self.session.execute(
            _match_query()
            .where(ProductMatch.is_manual_match.is_(True))
            .order_by(ProductMatch.created_at.desc(), ProductMatch.id.desc())
        )
        return list(result.scalars().all())

    async def list_violations(self) -> List[ProductMatch]:
        result = await self.session.execute(
            _match_query()
            .where(
                ProductMatch.is_map_violation.is_(True),
                ProductMatch.is_rejected.is_(False),
            )
            .order_by(ProductMatch.violation_severity.desc(), ProductMatch.id)
        )
        return list(result.scalars().all())

    async def list_active_matches(self, min_confidence: float = 0.0) -> List[ProductMatch]:
        result = await self.session.execute(
            _match_query()
            .where(
                ProductMatch.is_rejected.is_(False),
                ProductMatch.overall_score >= min_confidence,
            )
            .order_by(ProductMatch.id)
        )
        return list(result.scalars().all())

    async def list_violation_history(self, product_match_id: Optional[int] = None) -> List[MapViolationHistory]:
        query = select(MapViolationHistory)
        if product_match_id is not None:
            query = query.where(MapViolationHistory.product_match_id == product_match_id)
        result = await self.session.execute(
            query.order_by(MapViolationHistory.detected_at, MapViolationHistory.id)
        )
        return list(result.scalars().all())

    async def reserved_product_ids(self) -> tuple[Set[int], Set[int]]:
        result = await self.session.execute(
            select(ProductMatch.idc_product_id, ProductMatch.competitor_product_id).where(
                ProductMatch.is_manual_match.is_(True),
            )
        )
        rows = result.all()
        return {row[0] for row in rows}, {row[1] for row in rows}

    async def first_violation_date(
        self,
        idc_product_id: int,
        competitor_product_id: int,
    ) -> Optional[datetime]:
        result = await self.session.execute(
            select(func.min(MapViolationHistory.detected_at)).where(
                MapViolationHistory.idc_product_id == idc_product_id,
                MapViolationHistory.competitor_product_id == competitor_product_id,
            )
        )
        return result.scalar_one_or_none()

    async def delete_match(self, match: ProductMatch) -> None:
        await self.session.execute(
            update(MapViolationHistory)
            .where(MapViolationHistory.product_match_id == match.id)
            .values(product_match_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.delete(match)
        await self.session.flush()

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
