"""Feature extraction from coffee equipment product records."""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from mapwatch.ai.text_processor import text_processor
from mapwatch.config import settings

logger = logging.getLogger(__name__)

UNKNOWN_BRAND = "Unknown"

# Price bracket upper bounds (exclusive)
PRICE_BRACKETS = [
    (500, "entry level"),
    (1500, "mid range"),
    (3000, "premium"),
]
TOP_PRICE_BRACKET = "luxury"

# (attribute, value, keywords) checked against title + description
KEYWORD_ATTRIBUTES = [
    ("control", "pid temperature control", ["pid"]),
    ("group", "e61 group head", ["e61"]),
    ("feature", "pressure profiling", ["profiling"]),
    ("type", "burr grinder", ["burr"]),
    ("burr", "conical burr", ["conical"]),
    ("burr", "flat burr", ["flat"]),
    ("adjustment", "stepless", ["stepless"]),
    ("adjustment", "stepped", ["stepped"]),
    ("material", "stainless steel", ["stainless steel"]),
    ("material", "brass", ["brass"]),
]

# Boiler layouts are mutually exclusive, first hit wins
BOILER_TYPES = [
    ("dual boiler", "dual boiler"),
    ("single boiler", "single boiler"),
    ("heat exchanger", "heat exchanger"),
]

# Checked against the title only
SIZE_KEYWORDS = [
    ("compact", ["compact", "mini"]),
    ("commercial grade", ["commercial", "pro"]),
]

WATER_TANK_PATTERN = re.compile(r'(\d+(?:\.\d+)?)\s*(?:l|liters?|litres?)\b', re.IGNORECASE)
BEAN_HOPPER_PATTERN = re.compile(
    r'(\d+)\s*(?:g|grams?|kg|pounds?|lbs?)\s*(?:bean|hopper)', re.IGNORECASE
)
MODEL_NUMBER_PATTERN = re.compile(r'\b([A-Z]{2,}[-\s]?\d{2,}[A-Z]*)\b', re.IGNORECASE)


def _contains_word(text: str, keyword: str) -> bool:
    return re.search(rf'\b{re.escape(keyword)}\b', text) is not None


@dataclass
class ProductFeatures:
    """Normalized descriptors for one product."""

    brand: str
    category: Optional[str] = None
    price_bracket: Optional[str] = None
    model_number: Optional[str] = None
    attributes: List[str] = field(default_factory=list)

    def as_text(self) -> str:
        """Join the flattened "key: value" entries for embedding input."""
        return ", ".join(self.attributes)


class FeatureExtractor:
    """
    Extract structured descriptors from product records.

    Pure and deterministic: the same record always yields the same features.
    Used both for embedding text construction and for rule-based scoring.
    """

    def __init__(
        self,
        known_brands: Optional[Iterable[str]] = None,
        generic_vendors: Optional[Iterable[str]] = None,
    ):
        brands = list(known_brands) if known_brands is not None else settings.known_brands
        vendors = generic_vendors if generic_vendors is not None else settings.reference_store_names
        self._generic_vendors = {v.strip().lower() for v in vendors}
        self._brand_patterns = [
            (brand, re.compile(rf'(?<![\w-]){re.escape(brand)}(?![\w-])', re.IGNORECASE))
            for brand in brands
        ]

    def is_generic_vendor(self, vendor: Optional[str]) -> bool:
        """Return True when a vendor string names a store rather than a brand."""
        if not vendor:
            return True
        return vendor.strip().lower() in self._generic_vendors

    def resolve_brand(self, title: Optional[str], vendor: Optional[str] = None) -> str:
        """
        Resolve the manufacturer brand of a product.

        Order: trusted vendor, known brand found in the title, first title
        token, then "Unknown".
        """
        if vendor:
            vendor = vendor.strip()
            if len(vendor) > 1 and not self.is_generic_vendor(vendor):
                return vendor

        if title:
            brand = self._brand_from_title(title)
            if brand:
                return brand

            tokens = title.split()
            if tokens:
                return tokens[0]

        return UNKNOWN_BRAND

    def _brand_from_title(self, title: str) -> Optional[str]:
        for brand, pattern in self._brand_patterns:
            if pattern.search(title):
                return brand
        return None

    def extract_features(
        self,
        title: str,
        vendor: Optional[str] = None,
        product_type: Optional[str] = None,
        price: Optional[float | Decimal] = None,
        description: Optional[str] = None,
    ) -> ProductFeatures:
        """
        Extract descriptors from raw product fields.

        Args:
            title: Product title
            vendor: Vendor as reported by the source (may be noisy)
            product_type: Category string
            price: Product price
            description: Optional free-text description

        Returns:
            ProductFeatures with a flattened attribute list
        """
        brand = self.resolve_brand(title, vendor)
        title_lower = text_processor.normalize_text(title or "")
        type_lower = (product_type or "").lower()
        description_lower = text_processor.normalize_text(description or "")
        text = f"{title_lower} {description_lower}".strip()

        features = ProductFeatures(brand=brand)
        attributes = features.attributes

        if brand != UNKNOWN_BRAND:
            attributes.append(f"brand: {brand.lower()}")

        categories = []
        if "espresso" in type_lower or "espresso" in title_lower:
            categories.append("espresso machine")
        if "grinder" in type_lower or "grinder" in title_lower:
            categories.append("coffee grinder")
        for category in categories:
            attributes.append(f"category: {category}")
        if categories:
            features.category = categories[0]

        for phrase, value in BOILER_TYPES:
            if _contains_word(text, phrase):
                attributes.append(f"boiler: {value}")
                break

        for key, value, keywords in KEYWORD_ATTRIBUTES:
            if any(_contains_word(text, keyword) for keyword in keywords):
                attributes.append(f"{key}: {value}")

        for value, keywords in SIZE_KEYWORDS:
            if any(_contains_word(title_lower, keyword) for keyword in keywords):
                attributes.append(f"size: {value}")

        water_tank = WATER_TANK_PATTERN.search(title or "")
        if water_tank:
            attributes.append(f"water tank: {water_tank.group(1)}L")

        bean_hopper = BEAN_HOPPER_PATTERN.search(title or "")
        if bean_hopper:
            attributes.append(f"bean hopper: {bean_hopper.group(1)}g")

        features.price_bracket = self.price_bracket(price)
        if features.price_bracket:
            attributes.append(f"price range: {features.price_bracket}")

        model = MODEL_NUMBER_PATTERN.search(title or "")
        if model:
            features.model_number = model.group(1).lower()
            attributes.append(f"model: {features.model_number}")

        return features

    def extract_from_product(self, product) -> ProductFeatures:
        """Extract descriptors from a Product-like object."""
        return self.extract_features(
            title=product.title,
            vendor=product.vendor,
            product_type=product.product_type,
            price=product.price,
            description=getattr(product, "description", None),
        )

    @staticmethod
    def price_bracket(price: Optional[float | Decimal]) -> Optional[str]:
        """Bucket a price into entry/mid/premium/luxury."""
        if not price:
            return None
        value = float(price)
        for upper_bound, label in PRICE_BRACKETS:
            if value < upper_bound:
                return label
        return TOP_PRICE_BRACKET

    @staticmethod
    def title_embedding_text(product) -> str:
        """Text embedded for the title vector."""
        title = text_processor.clean_product_title(product.title or "")
        return f"{product.vendor or ''} {title}".strip()

    def features_embedding_text(self, product, features: Optional[ProductFeatures] = None) -> str:
        """Text embedded for the features vector."""
        features = features or self.extract_from_product(product)
        return f"{product.product_type or ''} {features.as_text()}".strip()


# Global feature extractor instance
feature_extractor = FeatureExtractor()
