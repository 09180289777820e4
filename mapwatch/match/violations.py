"""MAP violation evaluation for confirmed matches."""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

HIGH_CONFIDENCE = 0.9
MEDIUM_CONFIDENCE = 0.8
MANUAL_CONFIDENCE_LABEL = "manual"


@dataclass(frozen=True)
class PriceVerdict:
    """Pricing compliance of a competitor price against the reference (MAP) price."""

    price_difference: float
    price_difference_percent: float
    is_map_violation: bool
    violation_amount: Optional[float]
    violation_severity: Optional[float]

    def to_dict(self) -> dict:
        return asdict(self)


def evaluate_prices(
    reference_price: Optional[float | Decimal],
    competitor_price: Optional[float | Decimal],
) -> PriceVerdict:
    """
    Compare a competitor price against the MAP.

    Selling strictly below the reference price is a violation; equal prices
    are compliant. A missing price counts as 0.

    Args:
        reference_price: Reference (MAP) price
        competitor_price: Observed competitor price

    Returns:
        PriceVerdict
    """
    reference = float(reference_price or 0)
    competitor = float(competitor_price or 0)

    difference = competitor - reference
    difference_percent = difference / reference * 100 if reference > 0 else 0.0

    is_violation = competitor < reference
    violation_amount = None
    violation_severity = None
    if is_violation:
        violation_amount = reference - competitor
        violation_severity = violation_amount / reference * 100

    return PriceVerdict(
        price_difference=difference,
        price_difference_percent=difference_percent,
        is_map_violation=is_violation,
        violation_amount=violation_amount,
        violation_severity=violation_severity,
    )


def confidence_label(overall_score: float, is_manual: bool = False) -> str:
    """Informational bucket for a match score."""
    if is_manual:
        return MANUAL_CONFIDENCE_LABEL
    if overall_score >= HIGH_CONFIDENCE:
        return "high"
    if overall_score >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"
