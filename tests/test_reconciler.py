"""Tests for wipe-and-replace match reconciliation."""

from datetime import datetime, timedelta

import pytest

from mapwatch.db.models import MapViolationHistory, ProductMatch
from mapwatch.match.matcher import ProductMatcher
from mapwatch.match.reconciler import NEW_VIOLATION, MatchReconciler


@pytest.fixture
def catalog_products(product_factory):
    return {
        "ref_ecm": product_factory(id=1, title="ECM Synchronika", vendor="ECM", price=3200, source="idc"),
        "ref_eureka": product_factory(id=2, title="Eureka Mignon Zero", vendor="Eureka", price=699, source="idc"),
        "comp_ecm": product_factory(id=10, title="ECM Synchronika Dual Boiler", vendor="ECM", price=3050),
        "comp_eureka": product_factory(id=11, title="Eureka Mignon Zero", vendor="Eureka", price=699,
                                       source="cafe_liegeois"),
    }


@pytest.fixture
def stores(memory_stores, catalog_products):
    catalog, match_store = memory_stores
    for product in catalog_products.values():
        catalog._add(product)
    return catalog, match_store


def _results(extractor, catalog_products):
    references = [catalog_products["ref_ecm"], catalog_products["ref_eureka"]]
    competitors = [catalog_products["comp_ecm"], catalog_products["comp_eureka"]]
    return ProductMatcher(extractor=extractor).match(references, competitors, threshold=0.5)


def _manual_match(idc_id, comp_id):
    return ProductMatch(
        idc_product_id=idc_id,
        competitor_product_id=comp_id,
        source="kitchen_barista",
        overall_score=1.0,
        title_similarity=1.0,
        brand_similarity=1.0,
        type_similarity=1.0,
        price_similarity=1.0,
        confidence="manual",
        price_difference=0.0,
        price_difference_percent=0.0,
        is_map_violation=False,
        is_manual_match=True,
        is_rejected=False,
    )


@pytest.mark.asyncio
async def test_reconcile_creates_matches_and_history(stores, extractor, catalog_products):
    _, match_store = stores
    results = _results(extractor, catalog_products)

    outcome = await MatchReconciler(match_store).reconcile(results)

    assert outcome.matches_created == 2
    assert outcome.violations_detected == 1
    assert outcome.persist_failures == 0
    assert match_store.commits == 1

    assert len(match_store.history) == 1
    entry = match_store.history[0]
    assert entry.violation_type == NEW_VIOLATION
    assert entry.competitor_price == 3050
    assert entry.idc_price == 3200
    assert entry.violation_amount == pytest.approx(150)

    violation = next(m for m in match_store.matches.values() if m.is_map_violation)
    assert violation.first_violation_date == violation.last_checked
    assert violation.confidence in ("high", "medium", "low")


@pytest.mark.asyncio
async def test_failed_insert_does_not_abort_run(stores, extractor, catalog_products):
    _, match_store = stores
    match_store.fail_pairs = {(1, 10)}

    outcome = await MatchReconciler(match_store).reconcile(_results(extractor, catalog_products))

    assert outcome.persist_failures == 1
    assert outcome.matches_created == 1
    assert outcome.violations_detected == 0
    assert [(m.idc_product_id, m.competitor_product_id) for m in match_store.matches.values()] == [(2, 11)]
    assert match_store.history == []


@pytest.mark.asyncio
async def test_automatic_matches_replaced_manual_kept(stores, extractor, catalog_products):
    _, match_store = stores
    manual = await match_store.insert_match(_manual_match(2, 11))
    reconciler = MatchReconciler(match_store)

    first = await reconciler.reconcile(_results(extractor, catalog_products)[:1])
    second = await reconciler.reconcile(_results(extractor, catalog_products)[:1])

    assert first.matches_removed == 0
    assert second.matches_removed == 1
    automatic = [m for m in match_store.matches.values() if not m.is_manual_match]
    assert len(automatic) == 1
    assert match_store.matches[manual.id] is manual

    # One history row per run per violating match
    assert len(match_store.history) == 2
    assert match_store.history[0].product_match_id is None
    assert match_store.history[1].product_match_id == automatic[0].id


@pytest.mark.asyncio
async def test_first_violation_date_carried_over(stores, extractor, catalog_products):
    _, match_store = stores
    earlier = datetime.utcnow() - timedelta(days=3)
    match_store.history.append(MapViolationHistory(
        idc_product_id=1,
        competitor_product_id=10,
        violation_type=NEW_VIOLATION,
        competitor_price=3000,
        idc_price=3200,
        violation_amount=200,
        violation_percent=6.25,
        source="kitchen_barista",
        detected_at=earlier,
    ))

    await MatchReconciler(match_store).reconcile(_results(extractor, catalog_products))

    violation = next(m for m in match_store.matches.values() if m.is_map_violation)
    assert violation.first_violation_date == earlier
