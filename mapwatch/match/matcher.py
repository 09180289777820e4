"""Greedy, brand-scoped assignment of competitor products to reference products."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from mapwatch.ai.feature_extractor import UNKNOWN_BRAND, FeatureExtractor, feature_extractor
from mapwatch.config import settings
from mapwatch.db.models import Product
from mapwatch.match.similarity import SimilarityScorer, SimilarityScores
from mapwatch.match.violations import PriceVerdict, confidence_label, evaluate_prices

logger = logging.getLogger(__name__)

MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 1.0


def validate_threshold(threshold: float) -> float:
    """Reject thresholds outside 0.1-1.0."""
    if not MIN_THRESHOLD <= threshold <= MAX_THRESHOLD:
        raise ValueError(
            f"Confidence threshold must be between {MIN_THRESHOLD} and {MAX_THRESHOLD}, got {threshold}"
        )
    return threshold


@dataclass
class MatchResult:
    """Accepted pairing with its score record and pricing verdict."""

    reference: Product
    competitor: Product
    scores: SimilarityScores
    verdict: PriceVerdict
    confidence: str

    @property
    def overall_score(self) -> float:
        return self.scores.overall_score


class ProductMatcher:
    """
    Pairs reference products with competitor products.

    Rules:
    - Candidates must share the reference product's resolved brand
    - A competitor product is assigned at most once per run
    - Reference products are processed in input order; ties keep the
      first-encountered candidate
    - The best candidate is accepted only when its score reaches the threshold
    """

    def __init__(
        self,
        scorer: Optional[SimilarityScorer] = None,
        extractor: Optional[FeatureExtractor] = None,
    ):
        self.extractor = extractor or feature_extractor
        self.scorer = scorer or SimilarityScorer(self.extractor)

    def _brand_key(self, product: Product) -> str:
        return self.extractor.resolve_brand(product.title, product.vendor).strip().lower()

    def match(
        self,
        reference_products: Sequence[Product],
        competitor_products: Sequence[Product],
        threshold: Optional[float] = None,
        embeddings: Optional[Mapping[int, Sequence[float]]] = None,
        reserved_competitor_ids: Iterable[int] = (),
    ) -> List[MatchResult]:
        """
        Run the assignment pass.

        Args:
            reference_products: Reference (MAP) products, in processing order
            competitor_products: Competitor products
            threshold: Minimum overall score (defaults to settings)
            embeddings: Title embeddings keyed by product id
            reserved_competitor_ids: Competitor ids already taken (manual matches)

        Returns:
            Accepted matches in reference order
        """
        threshold = validate_threshold(
            threshold if threshold is not None else settings.match_confidence_threshold
        )
        embeddings = embeddings or {}
        used_competitor_ids = set(reserved_competitor_ids)

        # Brand-scoped candidate pools, input order preserved
        pools: Dict[str, List[Product]] = defaultdict(list)
        for competitor in competitor_products:
            if not competitor.price:
                logger.debug(f"Skipping competitor product {competitor.id} without a price")
                continue
            pools[self._brand_key(competitor)].append(competitor)

        results: List[MatchResult] = []
        for reference in reference_products:
            brand = self._brand_key(reference)
            if brand == UNKNOWN_BRAND.lower():
                logger.debug(f"Reference product {reference.id} has no resolvable brand")
                continue

            best_candidate: Optional[Product] = None
            best_scores: Optional[SimilarityScores] = None

            for candidate in pools.get(brand, []):
                if candidate.id in used_competitor_ids:
                    continue

                scores = self.scorer.score(
                    reference,
                    candidate,
                    reference_embedding=embeddings.get(reference.id),
                    candidate_embedding=embeddings.get(candidate.id),
                    reference_brand=brand,
                    candidate_brand=brand,
                )
                if best_scores is None or scores.overall_score > best_scores.overall_score:
                    best_candidate = candidate
                    best_scores = scores

            if best_candidate is None or best_scores.overall_score < threshold:
                logger.debug(
                    f"No match for reference product {reference.id} "
                    f"(best score {best_scores.overall_score if best_scores else 0:.3f})"
                )
                continue

            used_competitor_ids.add(best_candidate.id)
            verdict = evaluate_prices(reference.price, best_candidate.price)
            results.append(MatchResult(
                reference=reference,
                competitor=best_candidate,
                scores=best_scores,
                verdict=verdict,
                confidence=confidence_label(best_scores.overall_score),
            ))

        logger.info(
            f"Matched {len(results)} of {len(reference_products)} reference products "
            f"against {len(competitor_products)} competitor products (threshold {threshold})"
        )
        return results


# Global product matcher instance
product_matcher = ProductMatcher()
