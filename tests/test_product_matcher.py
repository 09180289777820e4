"""Tests for the greedy brand-scoped matcher."""

import pytest

from mapwatch.match.matcher import ProductMatcher, validate_threshold
from mapwatch.match.similarity import ScoringMode, SimilarityScores


class TableScorer:
    """Returns fixed overall scores per (reference id, candidate id)."""

    def __init__(self, table):
        self.table = table
        self.calls = []

    def score(self, reference, candidate, **kwargs):
        self.calls.append((reference.id, candidate.id))
        return SimilarityScores(
            overall_score=self.table.get((reference.id, candidate.id), 0.0),
            title_similarity=0.0,
            brand_similarity=1.0,
            type_similarity=0.0,
            price_similarity=0.0,
            embedding_similarity=None,
            mode=ScoringMode.RULE_BASED_ONLY,
        )


@pytest.fixture
def matcher(extractor):
    return ProductMatcher(extractor=extractor)


def test_synchronika_violation(matcher, product_factory):
    """Reference at 3200 vs competitor at 3050 is matched and flagged."""
    reference = product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc")
    competitor = product_factory(id=10, title="ECM Synchronika Dual Boiler", vendor="ECM", price=3050)

    results = matcher.match([reference], [competitor], threshold=0.5)

    assert len(results) == 1
    result = results[0]
    assert result.reference is reference
    assert result.competitor is competitor
    assert result.verdict.is_map_violation is True
    assert result.verdict.violation_amount == pytest.approx(150)
    assert result.verdict.violation_severity == pytest.approx(4.69, abs=0.01)
    assert result.overall_score >= 0.5


def test_brand_gate_blocks_cross_brand_match(matcher, product_factory):
    reference = product_factory(id=1, title="Eureka Mignon Zero", vendor="Eureka", price=400, source="idc")
    competitor = product_factory(id=10, title="Profitec Mignon Zero", vendor="Profitec", price=395)

    assert matcher.match([reference], [competitor], threshold=0.1) == []


def test_brand_gate_uses_resolved_brand(matcher, product_factory):
    """A store-name vendor is resolved from the title before gating."""
    reference = product_factory(id=1, title="ECM Classika PID", vendor="ECM", price=1800, source="idc")
    competitor = product_factory(id=10, title="ECM Classika PID", vendor="The Kitchen Barista", price=1800)

    results = matcher.match([reference], [competitor], threshold=0.7)

    assert [r.competitor.id for r in results] == [10]


def test_best_candidate_wins(extractor, product_factory):
    """Only the 0.9 candidate is matched; the 0.6 one stays unmatched."""
    reference = product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc")
    strong = product_factory(id=10, title="ECM Synchronika", vendor="ECM", price=3200)
    weak = product_factory(id=11, title="ECM Mechanika", vendor="ECM", price=2500)
    scorer = TableScorer({(1, 10): 0.9, (1, 11): 0.6})

    results = ProductMatcher(scorer=scorer, extractor=extractor).match(
        [reference], [weak, strong], threshold=0.5
    )

    assert [(r.reference.id, r.competitor.id) for r in results] == [(1, 10)]
    assert results[0].overall_score == 0.9


def test_reference_order_decides_contested_candidates(extractor, product_factory):
    first = product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc")
    second = product_factory(id=2, title="ECM Synchronika W", vendor="ECM", price=3300, source="idc")
    a = product_factory(id=10, title="ECM Synchronika", vendor="ECM", price=3200)
    b = product_factory(id=11, title="ECM Synchronika", vendor="ECM", price=3300)
    table = {(1, 10): 0.9, (1, 11): 0.6, (2, 10): 0.95, (2, 11): 0.65}

    forward = ProductMatcher(scorer=TableScorer(table), extractor=extractor).match(
        [first, second], [a, b], threshold=0.5
    )
    reverse = ProductMatcher(scorer=TableScorer(table), extractor=extractor).match(
        [second, first], [a, b], threshold=0.5
    )

    assert [(r.reference.id, r.competitor.id) for r in forward] == [(1, 10), (2, 11)]
    assert [(r.reference.id, r.competitor.id) for r in reverse] == [(2, 10), (1, 11)]


def test_ties_keep_first_candidate(extractor, product_factory):
    reference = product_factory(id=1, title="ECM Classika", vendor="ECM", price=1800, source="idc")
    first = product_factory(id=10, title="ECM Classika", vendor="ECM", price=1800)
    second = product_factory(id=11, title="ECM Classika", vendor="ECM", price=1800)
    scorer = TableScorer({(1, 10): 0.8, (1, 11): 0.8})

    results = ProductMatcher(scorer=scorer, extractor=extractor).match(
        [reference], [first, second], threshold=0.5
    )

    assert results[0].competitor.id == 10


def test_competitor_used_at_most_once(matcher, product_factory):
    references = [
        product_factory(id=i, title="Eureka Mignon Specialita", vendor="Eureka", price=899, source="idc",
                        external_id=f"idc-{i}")
        for i in range(1, 4)
    ]
    competitor = product_factory(id=10, title="Eureka Mignon Specialita", vendor="Eureka", price=899)

    results = matcher.match(references, [competitor], threshold=0.5)

    assert len(results) == 1
    assert results[0].reference.id == 1


def test_threshold_respected(extractor, product_factory):
    reference = product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc")
    candidate = product_factory(id=10, title="ECM Synchronika", vendor="ECM", price=3200)
    scorer = TableScorer({(1, 10): 0.69})
    matcher = ProductMatcher(scorer=scorer, extractor=extractor)

    assert matcher.match([reference], [candidate], threshold=0.7) == []
    assert len(matcher.match([reference], [candidate], threshold=0.69)) == 1


def test_invalid_threshold_rejected(matcher):
    with pytest.raises(ValueError):
        matcher.match([], [], threshold=0.05)
    with pytest.raises(ValueError):
        validate_threshold(1.5)
    assert validate_threshold(0.1) == 0.1
    assert validate_threshold(1.0) == 1.0


def test_reserved_and_unpriced_competitors_skipped(matcher, product_factory):
    reference = product_factory(id=1, title="Rocket Appartamento", vendor="Rocket", price=1900, source="idc")
    reserved = product_factory(id=10, title="Rocket Appartamento", vendor="Rocket", price=1850)
    unpriced = product_factory(id=11, title="Rocket Appartamento", vendor="Rocket", price=None)

    results = matcher.match([reference], [reserved, unpriced], threshold=0.5, reserved_competitor_ids={10})

    assert results == []


def test_zero_priced_competitor_not_flagged(matcher, product_factory):
    """A $0 listing (call for price) must not become a 100% violation."""
    reference = product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc")
    call_for_price = product_factory(id=10, title="ECM Synchronika", vendor="ECM", price=0)

    assert matcher.match([reference], [call_for_price], threshold=0.5) == []


def test_unknown_brand_reference_skipped(matcher, product_factory):
    reference = product_factory(id=1, title="", vendor=None, price=100, source="idc")
    competitor = product_factory(id=10, title="", vendor=None, price=100)

    assert matcher.match([reference], [competitor], threshold=0.1) == []


def test_embeddings_switch_scoring_mode(matcher, product_factory):
    reference = product_factory(id=1, title="ECM Classika PID", vendor="ECM", price=1800, source="idc")
    competitor = product_factory(id=10, title="ECM Classika PID", vendor="ECM", price=1750)

    results = matcher.match(
        [reference], [competitor], threshold=0.5, embeddings={1: [1.0, 2.0], 10: [1.0, 2.0]}
    )

    assert results[0].scores.mode is ScoringMode.WITH_EMBEDDINGS
    assert results[0].scores.embedding_similarity == pytest.approx(1.0)


def test_matching_is_deterministic(matcher, product_factory):
    references = [
        product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc"),
        product_factory(id=2, title="Eureka Mignon Zero", vendor="Eureka", price=699, source="idc"),
        product_factory(id=3, title="Profitec Move", vendor="Profitec", price=2199, source="idc"),
    ]
    competitors = [
        product_factory(id=10, title="ECM Synchronika Dual Boiler", vendor="ECM", price=3050),
        product_factory(id=11, title="Eureka Mignon Zero 65", vendor="Eureka", price=699),
        product_factory(id=12, title="Profitec Move Dual Boiler", vendor="Profitec", price=2199),
        product_factory(id=13, title="Eureka Mignon Silenzio", vendor="Eureka", price=549),
    ]

    def snapshot():
        return [
            (r.reference.id, r.competitor.id, r.scores.to_dict())
            for r in matcher.match(references, competitors, threshold=0.3)
        ]

    first = snapshot()
    assert first == snapshot()

    competitor_ids = [pair[1] for pair in first]
    assert len(competitor_ids) == len(set(competitor_ids))
