"""SQLAlchemy-backed catalog store."""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mapwatch.db.models import Product
from mapwatch.match.base import CatalogStore, EmbeddingCoverage, ProductFilter, SourceSummary

logger = logging.getLogger(__name__)

# Columns refreshed from an incoming record on upsert
UPSERT_FIELDS = (
    "title",
    "vendor",
    "product_type",
    "price",
    "compare_at_price",
    "available",
    "url",
    "image_url",
    "handle",
    "sku",
    "description",
    "last_scraped_at",
)
KEEP_WHEN_MISSING = ("available", "last_scraped_at")
CACHED_FIELDS = ("title_embedding", "features_embedding", "features")


def _apply_filter(query, product_filter: Optional[ProductFilter]):
    if product_filter is None:
        return query
    if product_filter.vendors:
        vendors = [v.lower() for v in product_filter.vendors]
        query = query.where(func.lower(Product.vendor).in_(vendors))
    if product_filter.exclude_sources:
        query = query.where(Product.source.notin_(product_filter.exclude_sources))
    if product_filter.require_price:
        query = query.where(Product.price.isnot(None), Product.price > 0)
    if product_filter.missing_embeddings:
        query = query.where(
            or_(Product.title_embedding.is_(None), Product.features_embedding.is_(None))
        )
    return query


class SqlCatalogStore(CatalogStore):
    """Catalog store over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_products(
        self,
        source: Optional[str] = None,
        product_filter: Optional[ProductFilter] = None,
    ) -> List[Product]:
        query = select(Product)
        if source:
            query = query.where(Product.source == source)
        query = _apply_filter(query, product_filter).order_by(Product.id)
        if product_filter and product_filter.limit:
            query = query.limit(product_filter.limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_product(self, product_id: int) -> Optional[Product]:
        return await self.session.get(Product, product_id)

    async def upsert_product(self, product: Product) -> Product:
        """
        Insert or update a product keyed on (external_id, source).

        Cached embeddings survive an update unless the title changed.
        """
        async with self.session.begin_nested():
            return await self._upsert(product)

    async def _upsert(self, product: Product) -> Product:
        result = await self.session.execute(
            select(Product).where(
                Product.external_id == product.external_id,
                Product.source == product.source,
            )
        )
        existing = result.scalar_one_or_none()

        if existing is None:
            self.session.add(product)
            await self.session.flush()
            return product

        if existing is product:
            await self.session.flush()
            return existing

        title_changed = existing.title != product.title
        for name in UPSERT_FIELDS:
            value = getattr(product, name)
            if value is None and name in KEEP_WHEN_MISSING:
                continue
            setattr(existing, name, value)

        for name in CACHED_FIELDS:
            value = getattr(product, name)
            if value is not None:
                setattr(existing, name, value)
            elif title_changed:
                setattr(existing, name, None)

        await self.session.flush()
        return existing

    async def delete_products(
        self,
        source: str,
        product_filter: Optional[ProductFilter] = None,
    ) -> int:
        query = delete(Product).where(Product.source == source)
        query = _apply_filter(query, product_filter)
        result = await self.session.execute(query.execution_options(synchronize_session="fetch"))
        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} products from source {source}")
        return deleted

    async def embedding_coverage(self) -> EmbeddingCoverage:
        async def count(*conditions) -> int:
            query = select(func.count(Product.id))
            for condition in conditions:
                query = query.where(condition)
            return (await self.session.execute(query)).scalar_one()

        needing_condition = or_(
            Product.title_embedding.is_(None), Product.features_embedding.is_(None)
        )
        by_source_result = await self.session.execute(
            select(Product.source, func.count(Product.id))
            .where(needing_condition)
            .group_by(Product.source)
            .order_by(Product.source)
        )

        return EmbeddingCoverage(
            total_products=await count(),
            with_title_embeddings=await count(Product.title_embedding.isnot(None)),
            with_features_embeddings=await count(Product.features_embedding.isnot(None)),
            with_both_embeddings=await count(
                Product.title_embedding.isnot(None), Product.features_embedding.isnot(None)
            ),
            needing_updates=await count(needing_condition),
            needing_updates_by_source={row[0]: row[1] for row in by_source_result.all()},
        )

    async def source_summaries(self, exclude_sources: Sequence[str] = ()) -> List[SourceSummary]:
        query = select(Product.source, func.count(Product.id), func.max(Product.last_scraped_at))
        if exclude_sources:
            query = query.where(Product.source.notin_(list(exclude_sources)))
        result = await self.session.execute(query.group_by(Product.source).order_by(Product.source))
        return [
            SourceSummary(source=source, product_count=count, last_scraped_at=last_scraped_at)
            for source, count, last_scraped_at in result.all()
        ]

    async def commit(self) -> None:
        await self.session.commit()
