from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogProduct(Base):
    __tablename__ = "catalog_product"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    discounted_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    has_tiered_pricing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    price_tiers: Mapped[list[ProductPriceTier]] = relationship(
        "ProductPriceTier",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductPriceTier.min_quantity",
    )

    __table_args__ = (
        Index("ix_catalog_product_seller", "seller_id"),
        Index("ix_catalog_product_has_tiered_pricing", "has_tiered_pricing"),
    )


class ProductPriceTier(Base):
    __tablename__ = "product_price_tiers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("catalog_product.id", ondelete="CASCADE"),
        nullable=False,
    )
    min_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    max_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discounted_unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    product: Mapped[CatalogProduct] = relationship("CatalogProduct", back_populates="price_tiers")

    __table_args__ = (
        CheckConstraint("min_quantity > 0", name="ck_product_price_tiers_min_positive"),
        CheckConstraint(
            "max_quantity IS NULL OR max_quantity > min_quantity",
            name="ck_product_price_tiers_max_above_min",
        ),
        CheckConstraint("unit_price > 0", name="ck_product_price_tiers_unit_price_positive"),
        CheckConstraint(
            "discounted_unit_price IS NULL OR (discounted_unit_price > 0 AND discounted_unit_price < unit_price)",
            name="ck_product_price_tiers_discount_range",
        ),
        Index("ix_product_price_tiers_product", "product_id", "min_quantity"),
    )
