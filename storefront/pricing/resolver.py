"""
Unit price resolution for a purchase quantity against a product's tiers.

Resolution order:
1. Sort tiers ascending by min_quantity
2. Applied tier = last tier whose min_quantity <= quantity (threshold matching),
   or, with range matching, the last tier whose [min, max] contains quantity
3. Effective tier price = discounted_unit_price, else unit_price
4. No applied tier -> fallback simple price (discounted fallback first)
5. Project the next tier and what reaching it would save
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from storefront.pricing.errors import InvalidQuantityError
from storefront.pricing.validation import TierLike, as_decimal, sort_tiers, upper_bound


ZERO = Decimal("0")


class TierMatching(str, Enum):
    THRESHOLD = "threshold"
    RANGE = "range"


@dataclass(slots=True)
class PricingResult:
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    applied_tier: Any | None
    savings: Decimal
    next_tier: Any | None
    next_tier_savings: Decimal
    units_to_next_tier: int

    @property
    def used_fallback(self) -> bool:
        return self.applied_tier is None


@dataclass(slots=True)
class PriceTableRow:
    tier: Any
    range_label: str
    unit_price: Decimal
    total_at_min_quantity: Decimal
    savings: Decimal
    savings_percentage: int
    is_best_value: bool


def effective_unit_price(tier: TierLike) -> Decimal:
    if tier.discounted_unit_price is not None:
        return as_decimal(tier.discounted_unit_price)
    return as_decimal(tier.unit_price)


def fallback_unit_price(base_price: Any, base_discounted_price: Any = None) -> Decimal:
    if base_discounted_price is not None:
        return as_decimal(base_discounted_price)
    if base_price is None:
        return ZERO
    return as_decimal(base_price)


def _savings(reference_unit_price: Decimal, unit_price: Decimal, quantity: int) -> Decimal:
    difference = (reference_unit_price - unit_price) * quantity
    return difference if difference > ZERO else ZERO


def resolve_price(
    quantity: int,
    tiers: Sequence[TierLike],
    fallback_price: Any,
    fallback_discounted_price: Any = None,
    *,
    matching: TierMatching = TierMatching.THRESHOLD,
) -> PricingResult:
    if quantity < 1:
        raise InvalidQuantityError(quantity)

    reference = fallback_unit_price(fallback_price, fallback_discounted_price)
    ordered = sort_tiers(tiers)

    applied: TierLike | None = None
    for tier in ordered:
        if tier.min_quantity > quantity:
            break
        if matching is TierMatching.RANGE and quantity > upper_bound(tier):
            continue
        applied = tier

    unit_price = effective_unit_price(applied) if applied is not None else reference
    next_tier = next((tier for tier in ordered if tier.min_quantity > quantity), None)

    next_tier_savings = ZERO
    units_to_next_tier = 0
    if next_tier is not None:
        next_tier_savings = _savings(reference, effective_unit_price(next_tier), next_tier.min_quantity)
        units_to_next_tier = next_tier.min_quantity - quantity

    return PricingResult(
        quantity=quantity,
        unit_price=unit_price,
        total_price=unit_price * quantity,
        applied_tier=applied,
        savings=_savings(reference, unit_price, quantity) if applied is not None else ZERO,
        next_tier=next_tier,
        next_tier_savings=next_tier_savings,
        units_to_next_tier=units_to_next_tier,
    )


def minimum_tier_price(tiers: Sequence[TierLike]) -> Decimal | None:
    if not tiers:
        return None
    return min(effective_unit_price(tier) for tier in tiers)


def best_value_tier(tiers: Sequence[TierLike]) -> TierLike | None:
    best: TierLike | None = None
    for tier in tiers:
        if best is None or effective_unit_price(tier) < effective_unit_price(best):
            best = tier
    return best


def savings_percentage(original_price: Any, new_price: Any) -> int:
    original = as_decimal(original_price)
    if original <= ZERO:
        return 0
    ratio = (original - as_decimal(new_price)) / original * 100
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_tier_range(tier: TierLike) -> str:
    if tier.max_quantity is None:
        return f"{tier.min_quantity}+ units"
    if tier.max_quantity == tier.min_quantity:
        return f"{tier.min_quantity} unit" if tier.min_quantity == 1 else f"{tier.min_quantity} units"
    return f"{tier.min_quantity}-{tier.max_quantity} units"


def build_price_table(
    tiers: Sequence[TierLike],
    fallback_price: Any,
    fallback_discounted_price: Any = None,
) -> list[PriceTableRow]:
    reference = fallback_unit_price(fallback_price, fallback_discounted_price)
    ordered = sort_tiers(tiers)
    best = best_value_tier(ordered)

    rows: list[PriceTableRow] = []
    for tier in ordered:
        unit_price = effective_unit_price(tier)
        rows.append(
            PriceTableRow(
                tier=tier,
                range_label=format_tier_range(tier),
                unit_price=unit_price,
                total_at_min_quantity=unit_price * tier.min_quantity,
                savings=_savings(reference, unit_price, tier.min_quantity),
                savings_percentage=max(savings_percentage(reference, unit_price), 0),
                is_best_value=tier is best,
            )
        )
    return rows
