"""Collaborator interfaces consumed by the matching pipeline."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set

from mapwatch.db.models import MapViolationHistory, Product, ProductMatch


@dataclass
class RawProductRecord:
    """Product-shaped record produced by a collector or the reference sync."""

    external_id: str
    title: str
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    price: Optional[Decimal] = None
    compare_at_price: Optional[Decimal] = None
    available: bool = True
    url: Optional[str] = None
    image_url: Optional[str] = None
    handle: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None


@dataclass
class ProductFilter:
    """Catalog query options."""

    vendors: List[str] = field(default_factory=list)  # Case-insensitive, empty = any
    exclude_sources: List[str] = field(default_factory=list)
    require_price: bool = False  # Positive price only
    missing_embeddings: bool = False
    limit: Optional[int] = None


@dataclass
class EmbeddingCoverage:
    """Embedding coverage statistics for the catalog."""

    total_products: int
    with_title_embeddings: int
    with_features_embeddings: int
    with_both_embeddings: int
    needing_updates: int
    needing_updates_by_source: Dict[str, int] = field(default_factory=dict)


@dataclass
class SourceSummary:
    """Product count and freshness of one catalog source."""

    source: str
    product_count: int
    last_scraped_at: Optional[datetime] = None


class CatalogStore(ABC):
    """Read/write access to catalog products, unique on (external_id, source)."""

    @abstractmethod
    async def list_products(
        self,
        source: Optional[str] = None,
        product_filter: Optional[ProductFilter] = None,
    ) -> List[Product]:
        """List products, ordered by id."""

    @abstractmethod
    async def get_product(self, product_id: int) -> Optional[Product]:
        """Get a product by id."""

    @abstractmethod
    async def upsert_product(self, product: Product) -> Product:
        """Insert or update a product keyed on (external_id, source)."""

    @abstractmethod
    async def delete_products(
        self,
        source: str,
        product_filter: Optional[ProductFilter] = None,
    ) -> int:
        """Delete products of a source; returns the number removed."""

    @abstractmethod
    async def embedding_coverage(self) -> EmbeddingCoverage:
        """Embedding coverage statistics."""

    @abstractmethod
    async def source_summaries(self, exclude_sources: Sequence[str] = ()) -> List[SourceSummary]:
        """Per-source product counts, ordered by source."""

    @abstractmethod
    async def commit(self) -> None:
        """Persist pending changes."""


class MatchStore(ABC):
    """Persistence for product matches and the violation audit trail."""

    @abstractmethod
    async def delete_automatic_matches(self) -> int:
        """Delete every match that is not manual; returns the number removed."""

    @abstractmethod
    async def insert_match(self, match: ProductMatch) -> ProductMatch:
        """Insert a match; raises on constraint violations."""

    @abstractmethod
    async def insert_violation_history(self, entry: MapViolationHistory) -> MapViolationHistory:
        """Append a violation history row."""

    @abstractmethod
    async def get_match(self, match_id: int) -> Optional[ProductMatch]:
        """Get a match by id."""

    @abstractmethod
    async def find_match(self, idc_product_id: int, competitor_product_id: int) -> Optional[ProductMatch]:
        """Get the match for a product pair."""

    @abstractmethod
    async def list_matches(
        self,
        min_confidence: float = 0.0,
        source: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[ProductMatch]:
        """List matches, violations first then by score."""

    @abstractmethod
    async def count_matches(self, min_confidence: float = 0.0, source: Optional[str] = None) -> int:
        """Count matches for the same filters as list_matches."""

    @abstractmethod
    async def list_manual_matches(self) -> List[ProductMatch]:
        """List manual matches, newest first."""

    @abstractmethod
    async def list_violations(self) -> List[ProductMatch]:
        """List non-rejected matches flagged as MAP violations."""

    @abstractmethod
    async def list_active_matches(self, min_confidence: float = 0.0) -> List[ProductMatch]:
        """List non-rejected matches scoring at least min_confidence, ordered by id."""

    @abstractmethod
    async def list_violation_history(self, product_match_id: Optional[int] = None) -> List[MapViolationHistory]:
        """List violation history rows, oldest first."""

    @abstractmethod
    async def reserved_product_ids(self) -> tuple[Set[int], Set[int]]:
        """(reference ids, competitor ids) held by manual matches, rejected ones included."""

    @abstractmethod
    async def first_violation_date(
        self,
        idc_product_id: int,
        competitor_product_id: int,
    ) -> Optional[datetime]:
        """Earliest recorded violation for a product pair."""

    @abstractmethod
    async def delete_match(self, match: ProductMatch) -> None:
        """Delete one match."""

    @abstractmethod
    async def commit(self) -> None:
        """Persist pending changes."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard pending changes."""


class ScrapeCollector(ABC):
    """Supplies raw product records for one competitor source."""

    @abstractmethod
    async def collect(self, source: str) -> List[RawProductRecord]:
        """
        Collect products from a competitor site.

        Args:
            source: Competitor key (e.g. 'kitchen_barista')

        Returns:
            Raw product records
        """
