"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Product(Base):
    """Catalog entry from the reference source or a competitor source."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)  # 'idc' or competitor key
    title: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    product_type: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    compare_at_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cached derived data (JSON-serialized float lists)
    title_embedding: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    features_embedding: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    features: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    last_scraped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    matches_as_reference: Mapped[list["ProductMatch"]] = relationship(
        "ProductMatch",
        foreign_keys="ProductMatch.idc_product_id",
        back_populates="idc_product",
        cascade="all, delete-orphan",
    )
    matches_as_competitor: Mapped[list["ProductMatch"]] = relationship(
        "ProductMatch",
        foreign_keys="ProductMatch.competitor_product_id",
        back_populates="competitor_product",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_product_external_id_source"),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} source={self.source!r} title={self.title!r}>"


class ProductMatch(Base):
    """Pairing between one reference product and one competitor product."""

    __tablename__ = "product_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    idc_product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    competitor_product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(64), nullable=False)  # Competitor key

    # Scores
    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    title_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    brand_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    type_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    price_similarity: Mapped[float] = mapped_column(Float, nullable=False)
    embedding_similarity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    confidence: Mapped[str] = mapped_column(String(16), nullable=False)  # high, medium, low, manual

    # Pricing verdict
    price_difference: Mapped[float] = mapped_column(Float, nullable=False)
    price_difference_percent: Mapped[float] = mapped_column(Float, nullable=False)
    is_map_violation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    violation_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    violation_severity: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Provenance
    is_manual_match: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_rejected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    first_violation_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_checked: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    idc_product: Mapped["Product"] = relationship(
        "Product", foreign_keys=[idc_product_id], back_populates="matches_as_reference"
    )
    competitor_product: Mapped["Product"] = relationship(
        "Product", foreign_keys=[competitor_product_id], back_populates="matches_as_competitor"
    )

    __table_args__ = (
        UniqueConstraint("idc_product_id", "competitor_product_id", name="uq_product_match"),
    )


class MapViolationHistory(Base):
    """Append-only audit trail of MAP violation detections."""

    __tablename__ = "map_violation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Kept when the match row is replaced by a later run
    product_match_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("product_matches.id", ondelete="SET NULL"), nullable=True
    )
    idc_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    competitor_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    violation_type: Mapped[str] = mapped_column(String(32), nullable=False)  # new_violation, manual_violation
    competitor_price: Mapped[float] = mapped_column(Float, nullable=False)
    idc_price: Mapped[float] = mapped_column(Float, nullable=False)
    violation_amount: Mapped[float] = mapped_column(Float, nullable=False)
    violation_percent: Mapped[float] = mapped_column(Float, nullable=False)
    competitor_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
