"""Shared fixtures: SQLite-backed session, in-memory stores and a fake embedding provider."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mapwatch.ai.embedding_service import EmbeddingProvider, EmbeddingService
from mapwatch.ai.feature_extractor import FeatureExtractor
from mapwatch.db.models import Base, Product
from mapwatch.match.base import CatalogStore, EmbeddingCoverage, MatchStore, SourceSummary
from mapwatch.match.errors import EmbeddingError
from mapwatch.worker.run_lock import LocalRunLock


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite/aiosqlite need their own BEGIN for SAVEPOINT support
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


def make_product(
    id: Optional[int] = None,
    title: str = "",
    vendor: Optional[str] = None,
    price: Optional[float] = None,
    source: str = "kitchen_barista",
    product_type: Optional[str] = None,
    external_id: Optional[str] = None,
    **kwargs,
) -> Product:
    """Transient product for engine tests."""
    return Product(
        id=id,
        external_id=external_id or f"{source}-{id if id is not None else title}",
        source=source,
        title=title,
        vendor=vendor,
        product_type=product_type,
        price=Decimal(str(price)) if price is not None else None,
        **kwargs,
    )


@pytest.fixture
def product_factory():
    return make_product


@pytest.fixture
def extractor():
    return FeatureExtractor(
        known_brands=["ECM", "Profitec", "Eureka", "Breville", "Rocket", "JX-Pro"],
        generic_vendors=["idrinkcoffee", "the kitchen barista"],
    )


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider: bag-of-letters vectors, optional failures."""

    name = "fake"

    def __init__(self, fail_on: Optional[List[str]] = None, fail_all: bool = False):
        self.fail_on = fail_on or []
        self.fail_all = fail_all
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail_all or any(marker in text for marker in self.fail_on):
            raise EmbeddingError(f"fake failure for '{text}'")
        vector = [0.0] * 26
        for char in text.lower():
            if "a" <= char <= "z":
                vector[ord(char) - ord("a")] += 1.0
        return vector


@pytest.fixture
def provider_factory():
    return FakeEmbeddingProvider


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(fake_provider):
    return EmbeddingService(fake_provider, delay_ms=0, cache_enabled=True)


@pytest.fixture
def local_lock():
    return LocalRunLock()


class InMemoryCatalogStore(CatalogStore):
    """Catalog store over a dict, for service and API tests."""

    def __init__(self, products: Optional[List[Product]] = None):
        self.products: Dict[int, Product] = {}
        self._next_id = 1
        self.commits = 0
        for product in products or []:
            self._add(product)

    def _add(self, product: Product) -> Product:
        if product.id is None:
            product.id = self._next_id
        self._next_id = max(self._next_id, product.id + 1)
        self.products[product.id] = product
        return product

    def _matches(self, product: Product, source, product_filter) -> bool:
        if source and product.source != source:
            return False
        if product_filter is None:
            return True
        if product_filter.vendors:
            vendors = {v.lower() for v in product_filter.vendors}
            if (product.vendor or "").lower() not in vendors:
                return False
        if product.source in product_filter.exclude_sources:
            return False
        if product_filter.require_price and not product.price:
            return False
        if product_filter.missing_embeddings and product.title_embedding and product.features_embedding:
            return False
        return True

    async def list_products(self, source=None, product_filter=None) -> List[Product]:
        found = [
            p for _, p in sorted(self.products.items())
            if self._matches(p, source, product_filter)
        ]
        if product_filter and product_filter.limit:
            found = found[:product_filter.limit]
        return found

    async def get_product(self, product_id: int) -> Optional[Product]:
        return self.products.get(product_id)

    async def upsert_product(self, product: Product) -> Product:
        for existing in self.products.values():
            if existing.external_id == product.external_id and existing.source == product.source:
                if existing is not product:
                    for name in ("title", "vendor", "product_type", "price", "url", "available"):
                        setattr(existing, name, getattr(product, name))
                return existing
        return self._add(product)

    async def delete_products(self, source: str, product_filter=None) -> int:
        doomed = [pid for pid, p in self.products.items() if self._matches(p, source, product_filter)]
        for pid in doomed:
            del self.products[pid]
        return len(doomed)

    async def embedding_coverage(self) -> EmbeddingCoverage:
        products = list(self.products.values())
        needing = [p for p in products if not (p.title_embedding and p.features_embedding)]
        by_source: Dict[str, int] = {}
        for p in needing:
            by_source[p.source] = by_source.get(p.source, 0) + 1
        return EmbeddingCoverage(
            total_products=len(products),
            with_title_embeddings=sum(1 for p in products if p.title_embedding),
            with_features_embeddings=sum(1 for p in products if p.features_embedding),
            with_both_embeddings=len(products) - len(needing),
            needing_updates=len(needing),
            needing_updates_by_source=by_source,
        )

    async def source_summaries(self, exclude_sources=()) -> List[SourceSummary]:
        grouped: Dict[str, List[Product]] = {}
        for p in self.products.values():
            if p.source not in exclude_sources:
                grouped.setdefault(p.source, []).append(p)
        return [
            SourceSummary(
                source=source,
                product_count=len(products),
                last_scraped_at=max((p.last_scraped_at for p in products if p.last_scraped_at), default=None),
            )
            for source, products in sorted(grouped.items())
        ]

    async def commit(self) -> None:
        self.commits += 1


class InMemoryMatchStore(MatchStore):
    """Match store over lists; insert_match fails for pairs listed in fail_pairs."""

    def __init__(self, catalog: InMemoryCatalogStore, fail_pairs=()):
        self.catalog = catalog
        self.fail_pairs = set(fail_pairs)
        self.matches: Dict[int, object] = {}
        self.history: List[object] = []
        self._next_id = 1
        self.commits = 0
        self.rollbacks = 0

    async def delete_automatic_matches(self) -> int:
        doomed = [mid for mid, m in self.matches.items() if not m.is_manual_match]
        for mid in doomed:
            del self.matches[mid]
        for entry in self.history:
            if entry.product_match_id in doomed:
                entry.product_match_id = None
        return len(doomed)

    async def insert_match(self, match):
        pair = (match.idc_product_id, match.competitor_product_id)
        if pair in self.fail_pairs or any(
            (m.idc_product_id, m.competitor_product_id) == pair for m in self.matches.values()
        ):
            raise RuntimeError(f"unique constraint failed for {pair}")
        match.id = self._next_id
        self._next_id += 1
        match.idc_product = self.catalog.products.get(match.idc_product_id)
        match.competitor_product = self.catalog.products.get(match.competitor_product_id)
        self.matches[match.id] = match
        return match

    async def insert_violation_history(self, entry):
        entry.id = len(self.history) + 1
        if entry.detected_at is None:
            entry.detected_at = datetime.utcnow()
        self.history.append(entry)
        return entry

    async def get_match(self, match_id: int):
        return self.matches.get(match_id)

    async def find_match(self, idc_product_id: int, competitor_product_id: int):
        for m in self.matches.values():
            if (m.idc_product_id, m.competitor_product_id) == (idc_product_id, competitor_product_id):
                return m
        return None

    def _filtered(self, min_confidence, source):
        return [
            m for m in self.matches.values()
            if m.overall_score >= min_confidence and (not source or m.source == source)
        ]

    async def list_matches(self, min_confidence=0.0, source=None, offset=0, limit=None):
        found = sorted(
            self._filtered(min_confidence, source),
            key=lambda m: (not m.is_map_violation, -m.overall_score, m.id),
        )[offset:]
        return found[:limit] if limit else found

    async def count_matches(self, min_confidence=0.0, source=None) -> int:
        return len(self._filtered(min_confidence, source))

    async def list_manual_matches(self):
        return sorted(
            (m for m in self.matches.values() if m.is_manual_match),
            key=lambda m: -m.id,
        )

    async def list_violations(self):
        return sorted(
            (m for m in self.matches.values() if m.is_map_violation and not m.is_rejected),
            key=lambda m: (-(m.violation_severity or 0), m.id),
        )

    async def list_active_matches(self, min_confidence=0.0):
        return [
            m for _, m in sorted(self.matches.items())
            if not m.is_rejected and m.overall_score >= min_confidence
        ]

    async def list_violation_history(self, product_match_id=None):
        if product_match_id is None:
            return list(self.history)
        return [h for h in self.history if h.product_match_id == product_match_id]

    async def reserved_product_ids(self):
        manual = [m for m in self.matches.values() if m.is_manual_match]
        return {m.idc_product_id for m in manual}, {m.competitor_product_id for m in manual}

    async def first_violation_date(self, idc_product_id, competitor_product_id):
        dates = [
            h.detected_at for h in self.history
            if (h.idc_product_id, h.competitor_product_id) == (idc_product_id, competitor_product_id)
        ]
        return min(dates) if dates else None

    async def delete_match(self, match) -> None:
        self.matches.pop(match.id, None)
        for entry in self.history:
            if entry.product_match_id == match.id:
                entry.product_match_id = None

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture
def memory_stores():
    catalog = InMemoryCatalogStore()
    return catalog, InMemoryMatchStore(catalog)
