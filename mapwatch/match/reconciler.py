"""Wipe-and-replace persistence of automatic matches."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Sequence

from mapwatch import metrics
from mapwatch.db.models import MapViolationHistory, ProductMatch
from mapwatch.match.base import MatchStore
from mapwatch.match.matcher import MatchResult

logger = logging.getLogger(__name__)

NEW_VIOLATION = "new_violation"
MANUAL_VIOLATION = "manual_violation"


@dataclass
class ReconcileOutcome:
    """Counts for one reconciliation pass."""

    matches_removed: int = 0
    matches_created: int = 0
    violations_detected: int = 0
    persist_failures: int = 0
    created: List[ProductMatch] = field(default_factory=list)


def build_violation_history(match: ProductMatch, competitor, reference, violation_type: str) -> MapViolationHistory:
    """Audit row for a violating match."""
    return MapViolationHistory(
        product_match_id=match.id,
        idc_product_id=match.idc_product_id,
        competitor_product_id=match.competitor_product_id,
        violation_type=violation_type,
        competitor_price=float(competitor.price or 0),
        idc_price=float(reference.price or 0),
        violation_amount=match.violation_amount or 0.0,
        violation_percent=match.violation_severity or 0.0,
        competitor_url=competitor.url,
        source=competitor.source,
        detected_at=match.last_checked,
    )


class MatchReconciler:
    """
    Makes one run's output the sole set of automatic matches.

    All non-manual matches are deleted before the new ones are written.
    Manual matches are never touched. A failing insert is logged and skipped.
    """

    def __init__(self, store: MatchStore):
        self.store = store

    def _build_match(self, result: MatchResult, checked_at: datetime) -> ProductMatch:
        scores = result.scores
        verdict = result.verdict
        return ProductMatch(
            idc_product_id=result.reference.id,
            competitor_product_id=result.competitor.id,
            source=result.competitor.source,
            overall_score=scores.overall_score,
            title_similarity=scores.title_similarity,
            brand_similarity=scores.brand_similarity,
            type_similarity=scores.type_similarity,
            price_similarity=scores.price_similarity,
            embedding_similarity=scores.embedding_similarity,
            confidence=result.confidence,
            price_difference=verdict.price_difference,
            price_difference_percent=verdict.price_difference_percent,
            is_map_violation=verdict.is_map_violation,
            violation_amount=verdict.violation_amount,
            violation_severity=verdict.violation_severity,
            is_manual_match=False,
            is_rejected=False,
            last_checked=checked_at,
        )

    async def reconcile(self, results: Sequence[MatchResult]) -> ReconcileOutcome:
        """
        Replace all automatic matches with the given results.

        Args:
            results: Accepted matches from the assignment pass

        Returns:
            ReconcileOutcome
        """
        outcome = ReconcileOutcome()
        outcome.matches_removed = await self.store.delete_automatic_matches()
        checked_at = datetime.utcnow()

        for result in results:
            match = self._build_match(result, checked_at)
            if match.is_map_violation:
                previous = await self.store.first_violation_date(
                    match.idc_product_id, match.competitor_product_id
                )
                match.first_violation_date = previous or checked_at

            try:
                await self.store.insert_match(match)
            except Exception as e:
                outcome.persist_failures += 1
                metrics.record_persist_failure()
                logger.error(
                    f"Error storing match {result.reference.id} -> {result.competitor.id}: {e}"
                )
                continue

            outcome.matches_created += 1
            outcome.created.append(match)
            metrics.record_match_created(match.source, match.is_map_violation)

            if not match.is_map_violation:
                continue

            outcome.violations_detected += 1
            logger.info(
                f"MAP violation detected: '{result.reference.title}' - "
                f"{match.source} at {result.competitor.price}, MAP {result.reference.price} "
                f"({match.violation_severity:.2f}% below)"
            )
            try:
                await self.store.insert_violation_history(
                    build_violation_history(match, result.competitor, result.reference, NEW_VIOLATION)
                )
            except Exception as e:
                logger.error(f"Error creating violation history for match {match.id}: {e}")

        await self.store.commit()
        logger.info(
            f"Reconciled matches: removed {outcome.matches_removed}, created {outcome.matches_created}, "
            f"violations {outcome.violations_detected}, failures {outcome.persist_failures}"
        )
        return outcome
