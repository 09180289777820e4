"""Matching run orchestration and match management operations."""

import logging
import math
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from mapwatch import metrics
from mapwatch.ai.embedding_service import EmbeddingService, parse_embedding, serialize_embedding
from mapwatch.ai.feature_extractor import FeatureExtractor, feature_extractor
from mapwatch.config import Settings, settings
from mapwatch.db.models import Product, ProductMatch
from mapwatch.logging_config import get_logger
from mapwatch.match.base import (
    CatalogStore,
    MatchStore,
    ProductFilter,
    RawProductRecord,
    ScrapeCollector,
)
from mapwatch.match.errors import (
    CatalogUnavailableError,
    DuplicateMatchError,
    MatchingAlreadyRunningError,
    MatchNotFoundError,
    ProductNotFoundError,
)
from mapwatch.match.matcher import ProductMatcher, validate_threshold
from mapwatch.match.reconciler import MANUAL_VIOLATION, MatchReconciler, build_violation_history
from mapwatch.match.violations import MANUAL_CONFIDENCE_LABEL, evaluate_prices
from mapwatch.worker.run_lock import RunLock, run_lock as default_run_lock

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Result of one matching run."""

    run_id: str
    matches_created: int
    violations_detected: int
    reference_products_analyzed: int
    competitor_products_analyzed: int
    products_without_embeddings: int
    persist_failures: int
    confidence_threshold: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IngestSummary:
    """Result of a catalog ingestion."""

    source: str
    received: int = 0
    stored: int = 0
    failed: int = 0
    deleted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MatchingService:
    """
    Runs the matching pipeline against injected stores.

    Pipeline:
    1. Load the reference (MAP) catalog and the competitor catalog
    2. Fill in missing embeddings (failures degrade to rule-based scoring)
    3. Greedy brand-scoped assignment
    4. Wipe-and-replace the automatic matches
    """

    def __init__(
        self,
        catalog_store: CatalogStore,
        match_store: MatchStore,
        embedding_service: Optional[EmbeddingService] = None,
        run_lock: Optional[RunLock] = None,
        matcher: Optional[ProductMatcher] = None,
        extractor: Optional[FeatureExtractor] = None,
        config: Settings = settings,
    ):
        self.catalog_store = catalog_store
        self.match_store = match_store
        self.embedding_service = embedding_service or EmbeddingService(None)
        self.run_lock = run_lock or default_run_lock
        self.extractor = extractor or feature_extractor
        self.matcher = matcher or ProductMatcher(extractor=self.extractor)
        self.config = config

    # ------------------------------------------------------------------
    # Matching run
    # ------------------------------------------------------------------

    async def run(self, confidence_threshold: Optional[float] = None) -> RunSummary:
        """
        Execute one full matching run.

        Args:
            confidence_threshold: Minimum overall score, 0.1-1.0 (defaults to settings)

        Returns:
            RunSummary

        Raises:
            ValueError: threshold out of range
            MatchingAlreadyRunningError: another run holds the lock
            CatalogUnavailableError: reference or competitor catalog is empty
        """
        threshold = validate_threshold(
            confidence_threshold
            if confidence_threshold is not None
            else self.config.match_confidence_threshold
        )
        run_id = uuid4().hex
        log = get_logger(__name__, run_id=run_id)

        token = await self.run_lock.acquire(run_id, self.config.run_lock_ttl_seconds)
        if token is None:
            log.warning("Matching run rejected: another run is in progress")
            raise MatchingAlreadyRunningError()

        started = time.monotonic()
        success = False
        try:
            summary = await self._run(run_id, threshold, log)
            success = True
            return summary
        finally:
            metrics.record_matching_run(success, time.monotonic() - started)
            await self.run_lock.release(run_id, token)

    async def _run(self, run_id: str, threshold: float, log) -> RunSummary:
        log.info(f"Starting matching run (threshold {threshold})")

        references = await self.catalog_store.list_products(
            self.config.reference_source,
            ProductFilter(
                vendors=list(self.config.target_brands),
                limit=self.config.reference_catalog_limit,
            ),
        )
        if not references:
            raise CatalogUnavailableError(
                "No reference (MAP) prices found. Please sync the reference catalog first."
            )

        competitors = await self.catalog_store.list_products(
            None,
            ProductFilter(
                exclude_sources=[self.config.reference_source],
                require_price=True,
                limit=self.config.competitor_catalog_limit,
            ),
        )
        if not competitors:
            raise CatalogUnavailableError(
                "No competitor products found. Please run competitor scraping first."
            )

        log.info(
            f"Loaded {len(references)} reference products and {len(competitors)} competitor products"
        )

        embeddings = await self._ensure_embeddings([*references, *competitors], log)
        without_embeddings = sum(
            1 for product in (*references, *competitors) if product.id not in embeddings
        )
        if without_embeddings:
            log.warning(f"{without_embeddings} products will be matched without embeddings")

        reserved_references, reserved_competitors = await self.match_store.reserved_product_ids()
        active_references = [r for r in references if r.id not in reserved_references]

        results = self.matcher.match(
            active_references,
            competitors,
            threshold=threshold,
            embeddings=embeddings,
            reserved_competitor_ids=reserved_competitors,
        )

        try:
            outcome = await MatchReconciler(self.match_store).reconcile(results)
        except Exception:
            await self.match_store.rollback()
            raise

        summary = RunSummary(
            run_id=run_id,
            matches_created=outcome.matches_created,
            violations_detected=outcome.violations_detected,
            reference_products_analyzed=len(references),
            competitor_products_analyzed=len(competitors),
            products_without_embeddings=without_embeddings,
            persist_failures=outcome.persist_failures,
            confidence_threshold=threshold,
        )
        log.info(
            f"Matching run complete: {summary.matches_created} matches, "
            f"{summary.violations_detected} violations, {summary.persist_failures} failures"
        )
        return summary

    async def _ensure_embeddings(self, products: Sequence[Product], log) -> Dict[int, List[float]]:
        """
        Title embeddings keyed by product id.

        Missing vectors are generated and stored when a provider is configured.
        """
        embeddings: Dict[int, List[float]] = {}
        generated = 0

        for product in products:
            vector = parse_embedding(product.title_embedding)
            if vector is None and self.embedding_service.enabled:
                if await self._embed_and_store(product):
                    vector = parse_embedding(product.title_embedding)
                    generated += 1
            if vector is not None:
                embeddings[product.id] = vector

        if generated:
            await self.catalog_store.commit()
            log.info(f"Generated embeddings for {generated} products")
        return embeddings

    async def _embed_and_store(self, product: Product) -> bool:
        result = await self.embedding_service.embed_product(product)
        if result is None:
            return False

        product.title_embedding = serialize_embedding(result.title_embedding)
        if result.features_embedding is not None:
            product.features_embedding = serialize_embedding(result.features_embedding)
        product.features = result.features
        try:
            await self.catalog_store.upsert_product(product)
        except Exception as e:
            logger.error(f"Error storing embeddings for product {product.id}: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Catalog ingestion
    # ------------------------------------------------------------------

    def _build_product(self, source: str, record: RawProductRecord, scraped_at: datetime) -> Product:
        return Product(
            external_id=record.external_id,
            source=source,
            title=record.title,
            vendor=self.extractor.resolve_brand(record.title, record.vendor),
            product_type=record.product_type,
            price=record.price,
            compare_at_price=record.compare_at_price,
            available=record.available,
            url=record.url,
            image_url=record.image_url,
            handle=record.handle,
            sku=record.sku,
            description=record.description,
            last_scraped_at=scraped_at,
        )

    async def _store_records(
        self,
        source: str,
        records: Iterable[RawProductRecord],
        summary: IngestSummary,
    ) -> IngestSummary:
        scraped_at = datetime.utcnow()
        for record in records:
            summary.received += 1
            try:
                await self.catalog_store.upsert_product(self._build_product(source, record, scraped_at))
            except Exception as e:
                summary.failed += 1
                logger.error(f"Error storing product {record.external_id} from {source}: {e}")
                continue
            summary.stored += 1

        await self.catalog_store.commit()
        return summary

    async def ingest_competitor_products(
        self,
        source: str,
        records: Iterable[RawProductRecord],
    ) -> IngestSummary:
        """
        Upsert scraped competitor records keyed on (external_id, source).

        The stored vendor is the resolved brand, so store-name vendors are
        replaced by the brand found in the title.
        """
        if source == self.config.reference_source:
            raise ValueError(f"'{source}' is the reference source; use sync_reference_catalog")

        summary = await self._store_records(source, records, IngestSummary(source=source))
        logger.info(
            f"Ingested {summary.stored}/{summary.received} products from {source} "
            f"({summary.failed} failed)"
        )
        return summary

    async def sync_reference_catalog(
        self,
        records: Iterable[RawProductRecord],
        brands: Optional[Sequence[str]] = None,
    ) -> IngestSummary:
        """
        Replace the reference catalog for the given brands.

        Reference products of those vendors are deleted, then the fresh
        records are inserted. Matches of deleted products go with them.
        """
        source = self.config.reference_source
        brands = list(brands) if brands else list(self.config.target_brands)
        summary = IngestSummary(source=source)

        summary.deleted = await self.catalog_store.delete_products(source, ProductFilter(vendors=brands))
        summary = await self._store_records(source, records, summary)
        logger.info(
            f"Synced reference catalog for {', '.join(brands) or 'all brands'}: "
            f"removed {summary.deleted}, stored {summary.stored}, failed {summary.failed}"
        )
        return summary

    async def collect_and_ingest(self, collector: ScrapeCollector, source: str) -> IngestSummary:
        """Collect one competitor source and ingest the records."""
        records = await collector.collect(source)
        logger.info(f"Collected {len(records)} products from {source}")
        return await self.ingest_competitor_products(source, records)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def backfill_embeddings(
        self,
        source: Optional[str] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Generate embeddings for products missing either vector.

        Args:
            source: Restrict to one source
            limit: Maximum products to process (defaults to settings)
            dry_run: List candidates without calling the provider

        Returns:
            Counts plus the first 10 errors
        """
        limit = limit or self.config.embedding_backfill_batch_size
        products = await self.catalog_store.list_products(
            source,
            ProductFilter(missing_embeddings=True, limit=limit),
        )

        if dry_run:
            return {
                "dry_run": True,
                "products_found": len(products),
                "products": [
                    {
                        "id": p.id,
                        "title": p.title,
                        "vendor": p.vendor,
                        "source": p.source,
                        "has_title_embedding": p.title_embedding is not None,
                        "has_features_embedding": p.features_embedding is not None,
                    }
                    for p in products
                ],
            }

        if not self.embedding_service.enabled:
            raise ValueError("No embedding provider configured")

        success = 0
        errors: List[str] = []
        for product in products:
            if await self._embed_and_store(product):
                success += 1
            else:
                errors.append(f"Product {product.id}: embedding unavailable")

        await self.catalog_store.commit()
        logger.info(f"Embedding backfill: {success} succeeded, {len(errors)} failed")
        return {
            "products_found": len(products),
            "products_processed": len(products),
            "success": success,
            "failed": len(errors),
            "errors": errors[:10],
        }

    async def embedding_coverage(self) -> Dict[str, Any]:
        """Embedding coverage across the catalog."""
        coverage = await self.catalog_store.embedding_coverage()
        total = coverage.total_products
        return {
            **asdict(coverage),
            "coverage_percent": round(coverage.with_both_embeddings / total * 100, 2) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Manual matches and review
    # ------------------------------------------------------------------

    async def create_manual_match(
        self,
        idc_product_id: int,
        competitor_product_id: int,
        confidence: Optional[float] = None,
    ) -> ProductMatch:
        """
        Record a user-asserted pairing.

        Raises:
            ProductNotFoundError: either product is missing
            DuplicateMatchError: the pair is already matched
        """
        reference = await self.catalog_store.get_product(idc_product_id)
        if reference is None:
            raise ProductNotFoundError(f"Reference product {idc_product_id} not found")
        competitor = await self.catalog_store.get_product(competitor_product_id)
        if competitor is None:
            raise ProductNotFoundError(f"Competitor product {competitor_product_id} not found")

        if await self.match_store.find_match(idc_product_id, competitor_product_id):
            raise DuplicateMatchError("Match already exists for this product pair")

        now = datetime.utcnow()
        verdict = evaluate_prices(reference.price, competitor.price)
        match = ProductMatch(
            idc_product_id=reference.id,
            competitor_product_id=competitor.id,
            source=competitor.source,
            overall_score=confidence if confidence is not None else 1.0,
            title_similarity=1.0,
            brand_similarity=1.0,
            type_similarity=1.0,
            price_similarity=1.0,
            embedding_similarity=None,
            confidence=MANUAL_CONFIDENCE_LABEL,
            price_difference=verdict.price_difference,
            price_difference_percent=verdict.price_difference_percent,
            is_map_violation=verdict.is_map_violation,
            violation_amount=verdict.violation_amount,
            violation_severity=verdict.violation_severity,
            is_manual_match=True,
            is_rejected=False,
            first_violation_date=now if verdict.is_map_violation else None,
            last_checked=now,
        )
        await self.match_store.insert_match(match)

        if match.is_map_violation:
            await self.match_store.insert_violation_history(
                build_violation_history(match, competitor, reference, MANUAL_VIOLATION)
            )

        await self.match_store.commit()
        metrics.record_match_created(match.source, match.is_map_violation)
        logger.info(
            f"Created manual match {match.id}: '{reference.title}' -> '{competitor.title}' ({competitor.source})"
        )
        return await self.match_store.get_match(match.id)

    async def list_manual_matches(self) -> List[ProductMatch]:
        return await self.match_store.list_manual_matches()

    async def delete_manual_match(self, match_id: int) -> None:
        """
        Remove a manual match.

        Raises:
            MatchNotFoundError: no manual match with that id
        """
        match = await self.match_store.get_match(match_id)
        if match is None or not match.is_manual_match:
            raise MatchNotFoundError(f"Manual match {match_id} not found")
        await self.match_store.delete_match(match)
        await self.match_store.commit()
        logger.info(f"Deleted manual match {match_id}")

    async def reject_match(self, match_id: int) -> ProductMatch:
        """
        Flag a match as a false positive.

        Raises:
            MatchNotFoundError: unknown match id
        """
        match = await self.match_store.get_match(match_id)
        if match is None:
            raise MatchNotFoundError(f"Match {match_id} not found")
        match.is_rejected = True
        match.updated_at = datetime.utcnow()
        await self.match_store.commit()
        logger.info(f"Rejected match {match_id}")
        return match

    async def list_matches(
        self,
        min_confidence: float = 0.7,
        source: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[ProductMatch], int]:
        """Stored matches, violations first then by score, plus the total count."""
        page = max(page, 1)
        matches = await self.match_store.list_matches(
            min_confidence=min_confidence,
            source=source,
            offset=(page - 1) * limit,
            limit=limit,
        )
        total = await self.match_store.count_matches(min_confidence=min_confidence, source=source)
        return matches, total

    async def list_violations(self) -> List[ProductMatch]:
        return await self.match_store.list_violations()

    async def violation_stats(self, min_confidence: float = 0.8) -> Dict[str, Any]:
        """
        MAP violation summary for the dashboard.

        Violation counts, revenue at risk and the worst offender cover
        non-rejected matches scoring at least min_confidence. Competitor
        status averages the price difference over every non-rejected match
        of that source.
        """
        active = await self.match_store.list_active_matches()
        violations = [
            m for m in active if m.is_map_violation and m.overall_score >= min_confidence
        ]

        violations_by_source: Dict[str, int] = defaultdict(int)
        for match in violations:
            violations_by_source[match.source] += 1

        worst_offender = None
        if violations_by_source:
            # Most violations, then source name
            source, count = min(violations_by_source.items(), key=lambda item: (-item[1], item[0]))
            worst_offender = {"source": source, "violations": count}

        competitor_status = []
        summaries = await self.catalog_store.source_summaries(
            exclude_sources=[self.config.reference_source]
        )
        for summary in summaries:
            differences = [
                m.price_difference
                for m in active
                if m.source == summary.source and m.price_difference is not None
            ]
            competitor_status.append({
                "source": summary.source,
                "products_tracked": summary.product_count,
                "matches": len(differences),
                "avg_price_difference": (
                    round(math.fsum(differences) / len(differences), 2) if differences else 0.0
                ),
                "last_scraped_at": summary.last_scraped_at,
            })

        return {
            "products_monitored": sum(s.product_count for s in summaries),
            "competitors_tracked": len(summaries),
            "map_violations": len(violations),
            "revenue_at_risk": round(math.fsum(m.violation_amount or 0.0 for m in violations), 2),
            "worst_offender": worst_offender,
            "violations_by_source": dict(sorted(violations_by_source.items())),
            "competitor_status": competitor_status,
            "min_confidence": min_confidence,
        }
