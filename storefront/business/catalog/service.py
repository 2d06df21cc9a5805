from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from storefront import audit, events
from storefront.business.catalog.guard import suspended_tier_guard
from storefront.business.catalog.models import CatalogProduct, ProductPriceTier, utcnow
from storefront.business.catalog.repository import CatalogProductRepository, PriceTierRepository
from storefront.business.catalog.schemas import (
    CatalogProductCreate,
    CatalogProductRead,
    PriceTableRead,
    PriceTableRowRead,
    PriceTierRead,
    PricingModeChangeRead,
    PricingModeChangeRequest,
    PricingQuoteRead,
    TierValidationReport,
    ValidationIssueRead,
)
from storefront.core.config import get_settings
from storefront.metrics import (
    observe_price_quote,
    observe_price_tier_replacement,
    observe_price_tier_validation_failure,
    observe_pricing_mode_change,
)
from storefront.pricing.errors import ModeChangeConfirmationError, TierStoreUnavailableError, TierValidationError
from storefront.pricing.mode import ModeChangeDecision, PricingMode, PricingModeCoordinator
from storefront.pricing.resolver import (
    TierMatching,
    build_price_table,
    fallback_unit_price,
    minimum_tier_price,
    resolve_price,
)
from storefront.pricing.validation import TierLike, TierValidationPolicy, ensure_valid_tiers, sort_tiers, validate_tiers


logger = logging.getLogger("storefront.catalog.pricing")
tracer = trace.get_tracer("storefront.catalog.pricing")

_QUERY_CANCELED_SQLSTATE = "57014"


def _tier_snapshot(tier: TierLike) -> dict[str, Any]:
    return {
        "min_quantity": tier.min_quantity,
        "max_quantity": tier.max_quantity,
        "unit_price": str(tier.unit_price),
        "discounted_unit_price": None if tier.discounted_unit_price is None else str(tier.discounted_unit_price),
    }


def _tier_read(row: ProductPriceTier | None) -> PriceTierRead | None:
    return None if row is None else PriceTierRead.model_validate(row)


def _is_timeout(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == _QUERY_CANCELED_SQLSTATE or "timeout" in str(orig).lower()


def _has_simple_price_data(product: CatalogProduct) -> bool:
    return any(value is not None and value > 0 for value in (product.price, product.discounted_price))


def _mode_state_key(product: CatalogProduct, tiers: Sequence[ProductPriceTier]) -> str:
    parts = [str(product.id), str(product.has_tiered_pricing), str(product.price), str(product.discounted_price)]
    parts.extend(
        f"{tier.min_quantity}:{tier.max_quantity}:{tier.unit_price}:{tier.discounted_unit_price}" for tier in tiers
    )
    return "|".join(parts)


@dataclass(slots=True)
class CatalogService:
    product_repository: CatalogProductRepository = CatalogProductRepository()
    tier_repository: PriceTierRepository = PriceTierRepository()
    policy: TierValidationPolicy | None = None
    matching: TierMatching | None = None

    def _policy(self) -> TierValidationPolicy:
        return self.policy or TierValidationPolicy.from_settings(get_settings())

    def _matching(self) -> TierMatching:
        return self.matching or TierMatching(get_settings().tier_matching)

    def _get_product_row(self, session: Session, product_id: uuid.UUID, *, for_update: bool = False) -> CatalogProduct:
        product = self.product_repository.get(session, product_id, for_update=for_update)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="product not found")
        return product

    def create_product(self, session: Session, dto: CatalogProductCreate) -> CatalogProductRead:
        product = CatalogProduct(**dto.model_dump(mode="python"))
        session.add(product)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="catalog product conflict")
        session.refresh(product)

        created = CatalogProductRead.model_validate(product)
        audit.record(
            actor_user_id=dto.seller_id,
            entity_type="catalog.product",
            entity_id=str(created.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
        )
        return created

    def get_product(self, session: Session, product_id: uuid.UUID) -> CatalogProductRead:
        return CatalogProductRead.model_validate(self._get_product_row(session, product_id))

    def list_tiers(self, session: Session, product_id: uuid.UUID) -> list[PriceTierRead]:
        product = self._get_product_row(session, product_id)
        return [PriceTierRead.model_validate(row) for row in self.tier_repository.list_for_product(session, product.id)]

    def preview_tiers(self, tiers: Sequence[TierLike]) -> TierValidationReport:
        issues = validate_tiers(tiers, self._policy(), allow_empty=False)
        return TierValidationReport(
            valid=not issues,
            errors=[ValidationIssueRead.model_validate(issue) for issue in issues],
        )

    def replace_tiers(
        self,
        session: Session,
        product_id: uuid.UUID,
        tiers: Sequence[TierLike],
        *,
        actor_user_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> list[PriceTierRead]:
        """
        Swap the product's whole tier set in a single transaction.

        The new set is validated before anything is written, written with the
        commit guard suspended for this product, then validated again as stored.
        Any failure rolls the transaction back and leaves the previous tiers in
        place. Storage failures surface as TierStoreUnavailableError; the call
        is safe to retry with the same input.
        """
        policy = self._policy()
        product_key = str(product_id)

        with tracer.start_as_current_span("catalog.price_tiers.replace") as span:
            span.set_attribute("product_id", product_key)
            span.set_attribute("tier_count", len(tiers))
            started = time.perf_counter()

            try:
                ensure_valid_tiers(tiers, policy, product_id=product_key)
                self._apply_statement_timeout(session, timeout_seconds)
                product = self._get_product_row(session, product_id, for_update=True)
                with suspended_tier_guard(session, product.id):
                    previous = self.tier_repository.delete_for_product(session, product.id)
                    before = [_tier_snapshot(row) for row in previous]
                    inserted = self.tier_repository.add_many(session, product.id, tiers)
                self._validate_stored_tiers(session, product.id, policy)
                product.updated_at = utcnow()
                session.commit()
            except TierValidationError as exc:
                session.rollback()
                span.set_attribute("outcome", "rejected")
                self._record_rejection(exc, product_key, len(tiers))
                raise
            except HTTPException:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                observe_price_tier_replacement("conflict")
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="price tier conflict") from exc
            except DBAPIError as exc:
                session.rollback()
                timed_out = _is_timeout(exc)
                span.set_attribute("outcome", "unavailable")
                observe_price_tier_replacement("unavailable")
                logger.error(
                    "price_tiers.store_unavailable",
                    extra={"product_id": product_key, "timed_out": timed_out, "error": str(exc)},
                )
                raise TierStoreUnavailableError(
                    "price tier store is unavailable, the update was not applied and can be retried",
                    timed_out=timed_out,
                ) from exc

            duration = time.perf_counter() - started
            stored = [PriceTierRead.model_validate(row) for row in sort_tiers(inserted)]
            after = [_tier_snapshot(row) for row in stored]
            span.set_attribute("outcome", "replaced")
            observe_price_tier_replacement("replaced", duration)

            audit.record(
                actor_user_id=actor_user_id,
                entity_type="catalog.price_tiers",
                entity_id=product_key,
                action="replace",
                before={"tiers": before},
                after={"tiers": after},
            )
            events.publish(
                {
                    "event_type": "catalog.price_tiers.replaced",
                    "product_id": product_key,
                    "tier_count": len(stored),
                    "previous_tier_count": len(before),
                }
            )
            logger.info(
                "price_tiers.replaced",
                extra={
                    "product_id": product_key,
                    "tier_count": len(stored),
                    "previous_tier_count": len(before),
                    "duration_ms": round(duration * 1000, 2),
                },
            )
            return stored

    def clear_tiers(self, session: Session, product_id: uuid.UUID, *, actor_user_id: str | None = None) -> int:
        product = self._get_product_row(session, product_id, for_update=True)
        try:
            removed = self.tier_repository.delete_for_product(session, product.id)
            before = [_tier_snapshot(row) for row in removed]
            session.commit()
        except DBAPIError as exc:
            session.rollback()
            raise TierStoreUnavailableError(
                "price tier store is unavailable, the tiers were not removed",
                timed_out=_is_timeout(exc),
            ) from exc

        if before:
            audit.record(
                actor_user_id=actor_user_id,
                entity_type="catalog.price_tiers",
                entity_id=str(product_id),
                action="clear",
                before={"tiers": before},
                after={"tiers": []},
            )
        return len(before)

    def quote_price(self, session: Session, product_id: uuid.UUID, quantity: int) -> PricingQuoteRead:
        with tracer.start_as_current_span("catalog.price.quote") as span:
            span.set_attribute("product_id", str(product_id))
            span.set_attribute("quantity", quantity)

            product = self._get_product_row(session, product_id)
            mode = PricingMode.from_flag(product.has_tiered_pricing)
            tiers = self.tier_repository.list_for_product(session, product.id) if mode is PricingMode.TIERED else []
            result = resolve_price(
                quantity,
                tiers,
                product.price,
                product.discounted_price,
                matching=self._matching(),
            )
            observe_price_quote("fallback" if result.used_fallback else "tier")
            span.set_attribute("used_fallback", result.used_fallback)

            return PricingQuoteRead(
                product_id=product.id,
                pricing_mode=mode.value,
                quantity=result.quantity,
                unit_price=result.unit_price,
                total_price=result.total_price,
                applied_tier=_tier_read(result.applied_tier),
                savings=result.savings,
                next_tier=_tier_read(result.next_tier),
                next_tier_savings=result.next_tier_savings,
                units_to_next_tier=result.units_to_next_tier,
                used_fallback=result.used_fallback,
            )

    def price_table(self, session: Session, product_id: uuid.UUID) -> PriceTableRead:
        product = self._get_product_row(session, product_id)
        mode = PricingMode.from_flag(product.has_tiered_pricing)
        tiers = self.tier_repository.list_for_product(session, product.id) if mode is PricingMode.TIERED else []

        rows = [
            PriceTableRowRead(
                tier=PriceTierRead.model_validate(row.tier),
                range_label=row.range_label,
                unit_price=row.unit_price,
                total_at_min_quantity=row.total_at_min_quantity,
                savings=row.savings,
                savings_percentage=row.savings_percentage,
                is_best_value=row.is_best_value,
            )
            for row in build_price_table(tiers, product.price, product.discounted_price)
        ]
        return PriceTableRead(
            product_id=product.id,
            pricing_mode=mode.value,
            fallback_unit_price=fallback_unit_price(product.price, product.discounted_price),
            minimum_tier_price=minimum_tier_price(tiers),
            rows=rows,
        )

    def change_pricing_mode(
        self,
        session: Session,
        product_id: uuid.UUID,
        dto: PricingModeChangeRequest,
        *,
        actor_user_id: str | None = None,
    ) -> PricingModeChangeRead:
        with tracer.start_as_current_span("catalog.pricing_mode.change") as span:
            span.set_attribute("product_id", str(product_id))
            span.set_attribute("target_mode", dto.target_mode)

            try:
                product = self._get_product_row(session, product_id, for_update=True)
                tiers = self.tier_repository.list_for_product(session, product.id)
                coordinator = PricingModeCoordinator(
                    PricingMode.from_flag(product.has_tiered_pricing),
                    state_key=_mode_state_key(product, tiers),
                )
                decision = coordinator.request_mode_change(
                    dto.target_mode,
                    has_simple_data=_has_simple_price_data(product),
                    has_tiered_data=bool(tiers),
                    acknowledgement=dto.confirmation_token,
                )
                changed = decision.applied and decision.target_mode is not decision.current_mode
                if changed:
                    before = {"pricing_mode": decision.current_mode.value, "tiers": [_tier_snapshot(row) for row in tiers]}
                    self._apply_pricing_mode(session, product, decision.target_mode)
                    session.commit()
                else:
                    session.rollback()
            except ModeChangeConfirmationError:
                session.rollback()
                observe_pricing_mode_change(dto.target_mode, "stale_confirmation")
                raise
            except HTTPException:
                session.rollback()
                raise
            except DBAPIError as exc:
                session.rollback()
                raise TierStoreUnavailableError(
                    "pricing store is unavailable, the mode change was not applied",
                    timed_out=_is_timeout(exc),
                ) from exc

            result = self._mode_change_result(decision, changed)
            span.set_attribute("result", result)
            observe_pricing_mode_change(decision.target_mode.value, result)
            logger.info(
                "pricing_mode.change",
                extra={
                    "product_id": str(product_id),
                    "pricing_mode": decision.current_mode.value,
                    "target_mode": decision.target_mode.value,
                    "outcome": result,
                },
            )

            if changed:
                audit.record(
                    actor_user_id=actor_user_id,
                    entity_type="catalog.product",
                    entity_id=str(product_id),
                    action="change_pricing_mode",
                    before=before,
                    after={"pricing_mode": decision.target_mode.value},
                )
                events.publish(
                    {
                        "event_type": "catalog.product.pricing_mode_changed",
                        "product_id": str(product_id),
                        "pricing_mode": decision.target_mode.value,
                        "discarded": None if decision.discards is None else decision.discards.value,
                    }
                )

            return PricingModeChangeRead(
                product_id=product_id,
                current_mode=(decision.target_mode if decision.applied else decision.current_mode).value,
                target_mode=decision.target_mode.value,
                applied=decision.applied,
                requires_confirmation=decision.requires_confirmation,
                discards=None if decision.discards is None else decision.discards.value,
                confirmation_token=decision.confirmation_token,
            )

    @staticmethod
    def _mode_change_result(decision: ModeChangeDecision, changed: bool) -> str:
        if decision.requires_confirmation:
            return "confirmation_required"
        return "applied" if changed else "unchanged"

    def _apply_pricing_mode(self, session: Session, product: CatalogProduct, target: PricingMode) -> None:
        if target is PricingMode.TIERED:
            product.price = None
            product.discounted_price = None
            product.has_tiered_pricing = True
        else:
            self.tier_repository.delete_for_product(session, product.id)
            product.has_tiered_pricing = False
        product.updated_at = utcnow()

    def _validate_stored_tiers(self, session: Session, product_id: uuid.UUID, policy: TierValidationPolicy) -> None:
        stored = self.tier_repository.list_for_product(session, product_id)
        ensure_valid_tiers(stored, policy, product_id=str(product_id))

    def _apply_statement_timeout(self, session: Session, timeout_seconds: float | None) -> None:
        seconds = get_settings().tier_store_timeout_seconds if timeout_seconds is None else timeout_seconds
        if not seconds or session.get_bind().dialect.name != "postgresql":
            return
        session.execute(
            text("SELECT set_config('statement_timeout', :timeout, true)"),
            {"timeout": f"{max(int(seconds * 1000), 1)}ms"},
        )

    @staticmethod
    def _record_rejection(exc: TierValidationError, product_key: str, tier_count: int) -> None:
        for issue in exc.issues:
            observe_price_tier_validation_failure(issue.type)
        observe_price_tier_replacement("rejected")
        logger.info(
            "price_tiers.rejected",
            extra={"product_id": product_key, "tier_count": tier_count, "rules": exc.rules},
        )


catalog_service = CatalogService()
