"""Composite similarity scoring between a reference and a competitor product."""

import math
from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from mapwatch.ai.feature_extractor import FeatureExtractor, feature_extractor
from mapwatch.ai.text_processor import text_processor


class ScoringMode(str, Enum):
    """Weighting scheme, chosen once per pair from embedding availability."""

    WITH_EMBEDDINGS = "with_embeddings"
    RULE_BASED_ONLY = "rule_based_only"


# Weight tables are fixed; each sums to 1.0
EMBEDDING_WEIGHTS = {
    "embedding": 0.40,
    "brand": 0.25,
    "title": 0.20,
    "type": 0.10,
    "price": 0.05,
}

RULE_BASED_WEIGHTS = {
    "brand": 0.40,
    "title": 0.30,
    "type": 0.20,
    "price": 0.10,
}


@dataclass(frozen=True)
class SimilarityScores:
    """Score record for one reference/candidate pair."""

    overall_score: float
    title_similarity: float
    brand_similarity: float
    type_similarity: float
    price_similarity: float
    embedding_similarity: Optional[float]
    mode: ScoringMode

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


def select_scoring_mode(
    reference_embedding: Optional[Sequence[float]],
    candidate_embedding: Optional[Sequence[float]],
) -> ScoringMode:
    """Embeddings are used only when both sides have one."""
    if reference_embedding is not None and candidate_embedding is not None:
        return ScoringMode.WITH_EMBEDDINGS
    return ScoringMode.RULE_BASED_ONLY


def combine_scores(
    mode: ScoringMode,
    brand: float,
    title: float,
    type_: float,
    price: float,
    embedding: Optional[float] = None,
) -> float:
    """Weighted sum of component scores for the given mode."""
    if mode is ScoringMode.WITH_EMBEDDINGS:
        if embedding is None:
            raise ValueError("embedding similarity is required in WITH_EMBEDDINGS mode")
        w = EMBEDDING_WEIGHTS
        terms = [
            w["embedding"] * embedding,
            w["brand"] * brand,
            w["title"] * title,
            w["type"] * type_,
            w["price"] * price,
        ]
    else:
        w = RULE_BASED_WEIGHTS
        terms = [
            w["brand"] * brand,
            w["title"] * title,
            w["type"] * type_,
            w["price"] * price,
        ]
    return math.fsum(terms)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Mismatched lengths, empty vectors and zero magnitudes yield 0.0.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
    if math.isnan(similarity):
        return 0.0
    return similarity


def title_similarity(title_a: str, title_b: str) -> float:
    """
    Token-overlap ratio between two titles.

    Each token of A scores 1.0 for an equal token in B, or 0.5 when one
    contains the other; the first matching token of B wins. The sum is divided
    by the longer token list.
    """
    tokens_a = text_processor.title_tokens(title_a or "")
    tokens_b = text_processor.title_tokens(title_b or "")
    if not tokens_a or not tokens_b:
        return 0.0

    matches = 0.0
    for token_a in tokens_a:
        for token_b in tokens_b:
            if token_a == token_b:
                matches += 1.0
                break
            if token_a in token_b or token_b in token_a:
                matches += 0.5
                break

    return matches / max(len(tokens_a), len(tokens_b))


def brand_similarity(brand_a: Optional[str], brand_b: Optional[str]) -> float:
    if not brand_a or not brand_b:
        return 0.0
    return 1.0 if brand_a.strip().lower() == brand_b.strip().lower() else 0.0


def type_similarity(type_a: Optional[str], type_b: Optional[str]) -> float:
    """Exact (case-insensitive) category equality; missing categories never match."""
    if not type_a or not type_b:
        return 0.0
    return 1.0 if type_a.strip().lower() == type_b.strip().lower() else 0.0


def price_similarity(price_a: Optional[float | Decimal], price_b: Optional[float | Decimal]) -> float:
    if not price_a or not price_b:
        return 0.0
    a = float(price_a)
    b = float(price_b)
    largest = max(a, b)
    if largest <= 0:
        return 0.0
    return max(0.0, 1 - abs(a - b) / largest)


class SimilarityScorer:
    """Scores a reference product against a candidate competitor product."""

    def __init__(self, extractor: Optional[FeatureExtractor] = None):
        self.extractor = extractor or feature_extractor

    def score(
        self,
        reference,
        candidate,
        reference_embedding: Optional[Sequence[float]] = None,
        candidate_embedding: Optional[Sequence[float]] = None,
        reference_brand: Optional[str] = None,
        candidate_brand: Optional[str] = None,
    ) -> SimilarityScores:
        """
        Compute the full score record for a pair.

        Args:
            reference: Reference (MAP) product
            candidate: Competitor product
            reference_embedding: Title embedding of the reference product
            candidate_embedding: Title embedding of the candidate product
            reference_brand: Pre-resolved brand (resolved here when omitted)
            candidate_brand: Pre-resolved brand (resolved here when omitted)

        Returns:
            SimilarityScores
        """
        if reference_brand is None:
            reference_brand = self.extractor.resolve_brand(reference.title, reference.vendor)
        if candidate_brand is None:
            candidate_brand = self.extractor.resolve_brand(candidate.title, candidate.vendor)

        brand = brand_similarity(reference_brand, candidate_brand)
        title = title_similarity(reference.title, candidate.title)
        category = type_similarity(reference.product_type, candidate.product_type)
        price = price_similarity(reference.price, candidate.price)

        mode = select_scoring_mode(reference_embedding, candidate_embedding)
        embedding = None
        if mode is ScoringMode.WITH_EMBEDDINGS:
            embedding = cosine_similarity(reference_embedding, candidate_embedding)

        overall = combine_scores(mode, brand, title, category, price, embedding)
        return SimilarityScores(
            overall_score=overall,
            title_similarity=title,
            brand_similarity=brand,
            type_similarity=category,
            price_similarity=price,
            embedding_similarity=embedding,
            mode=mode,
        )


# Global scorer instance
similarity_scorer = SimilarityScorer()
