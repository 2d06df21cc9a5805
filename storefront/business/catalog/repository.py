from __future__ import annotations

import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.business.catalog.models import CatalogProduct, ProductPriceTier
from storefront.pricing.validation import TierLike


class CatalogProductRepository:
    resource = "catalog.product"

    def get(self, session: Session, product_id: uuid.UUID, *, for_update: bool = False) -> CatalogProduct | None:
        stmt = select(CatalogProduct).where(CatalogProduct.id == product_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)


class PriceTierRepository:
    resource = "catalog.price_tier"

    def list_for_product(self, session: Session, product_id: uuid.UUID) -> list[ProductPriceTier]:
        stmt = (
            select(ProductPriceTier)
            .where(ProductPriceTier.product_id == product_id)
            .order_by(ProductPriceTier.min_quantity.asc())
        )
        return list(session.scalars(stmt).all())

    def delete_for_product(self, session: Session, product_id: uuid.UUID) -> list[ProductPriceTier]:
        existing = self.list_for_product(session, product_id)
        for row in existing:
            session.delete(row)
        session.flush()
        return existing

    def add_many(self, session: Session, product_id: uuid.UUID, tiers: Sequence[TierLike]) -> list[ProductPriceTier]:
        rows = [
            ProductPriceTier(
                product_id=product_id,
                min_quantity=tier.min_quantity,
                max_quantity=tier.max_quantity,
                unit_price=tier.unit_price,
                discounted_unit_price=tier.discounted_unit_price,
            )
            for tier in tiers
        ]
        session.add_all(rows)
        session.flush()
        return rows
