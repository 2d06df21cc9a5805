"""
Structural and pricing rules for a product's set of quantity tiers.

The same rule set backs the preview endpoint, the atomic replace in the tier
store and the commit-time guard, so a tier set accepted here is never rejected
at save time under the same policy.
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeVar

from storefront.pricing.errors import EmptyInputError, TierValidationError

if TYPE_CHECKING:
    from storefront.core.config import Settings


IssueType = Literal[
    "overlap",
    "gap",
    "invalid_min",
    "invalid_max",
    "invalid_price",
    "invalid_discount",
    "empty_set",
]


class TierLike(Protocol):
    min_quantity: int
    max_quantity: int | None
    unit_price: Any
    discounted_unit_price: Any


T = TypeVar("T", bound=TierLike)


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    type: IssueType
    message: str
    tier_indexes: tuple[int, ...] = ()

    @property
    def tier_index(self) -> int | None:
        return self.tier_indexes[0] if self.tier_indexes else None


@dataclass(frozen=True, slots=True)
class TierValidationPolicy:
    """Optional rules layered on top of the base invariants."""

    require_start_at_one: bool = False
    require_contiguous: bool = False

    @classmethod
    def strict(cls) -> TierValidationPolicy:
        return cls(require_start_at_one=True, require_contiguous=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> TierValidationPolicy:
        return cls(
            require_start_at_one=settings.tier_require_start_at_one,
            require_contiguous=settings.tier_require_contiguous,
        )


BASE_POLICY = TierValidationPolicy()

# Storage limits of product_price_tiers: INTEGER bounds and NUMERIC(12, 2) prices.
MAX_QUANTITY = 2_147_483_647
MONEY_QUANTUM = Decimal("0.01")
MAX_MONEY = Decimal("9999999999.99")


def as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def upper_bound(tier: TierLike) -> int | float:
    return math.inf if tier.max_quantity is None else tier.max_quantity


def sort_tiers(tiers: Iterable[T]) -> list[T]:
    return sorted(tiers, key=lambda tier: (tier.min_quantity, upper_bound(tier)))


def fits_money_column(value: Decimal) -> bool:
    if not value.is_finite() or abs(value) > MAX_MONEY:
        return False
    return value == value.quantize(MONEY_QUANTUM)


def _format_span(start: int, end: int | float) -> str:
    return f"{start}+" if end == math.inf else f"{start}-{end}"


def validate_tiers(
    tiers: Sequence[TierLike],
    policy: TierValidationPolicy | None = None,
    *,
    allow_empty: bool = True,
) -> list[ValidationIssue]:
    policy = policy or BASE_POLICY
    issues: list[ValidationIssue] = []

    if not tiers:
        if not allow_empty:
            issues.append(ValidationIssue("empty_set", "At least one price tier is required"))
        return issues

    ordered = sort_tiers(tiers)

    if policy.require_start_at_one and ordered[0].min_quantity != 1:
        issues.append(
            ValidationIssue(
                "invalid_min",
                f"The first tier must start at quantity 1, currently starts at {ordered[0].min_quantity}",
                (0,),
            )
        )

    covered_to: int | float = 0
    for index, tier in enumerate(ordered):
        label = index + 1

        if tier.min_quantity <= 0:
            issues.append(ValidationIssue("invalid_min", f"Tier {label}: minimum quantity must be greater than 0", (index,)))
        elif tier.min_quantity > MAX_QUANTITY:
            issues.append(
                ValidationIssue("invalid_min", f"Tier {label}: minimum quantity must not exceed {MAX_QUANTITY}", (index,))
            )

        if tier.max_quantity is not None and tier.max_quantity <= tier.min_quantity:
            issues.append(
                ValidationIssue("invalid_max", f"Tier {label}: maximum quantity must be greater than the minimum", (index,))
            )
        elif tier.max_quantity is not None and tier.max_quantity > MAX_QUANTITY:
            issues.append(
                ValidationIssue("invalid_max", f"Tier {label}: maximum quantity must not exceed {MAX_QUANTITY}", (index,))
            )

        unit_price = as_decimal(tier.unit_price)
        price_storable = fits_money_column(unit_price)
        if not price_storable:
            issues.append(
                ValidationIssue(
                    "invalid_price",
                    f"Tier {label}: unit price must have at most 2 decimal places and be below {MAX_MONEY + MONEY_QUANTUM}",
                    (index,),
                )
            )
        elif unit_price <= 0:
            issues.append(ValidationIssue("invalid_price", f"Tier {label}: unit price must be greater than 0", (index,)))

        if tier.discounted_unit_price is not None:
            discounted = as_decimal(tier.discounted_unit_price)
            if not fits_money_column(discounted):
                issues.append(
                    ValidationIssue(
                        "invalid_discount",
                        f"Tier {label}: discounted price must have at most 2 decimal places "
                        f"and be below {MAX_MONEY + MONEY_QUANTUM}",
                        (index,),
                    )
                )
            else:
                if discounted <= 0:
                    issues.append(
                        ValidationIssue("invalid_discount", f"Tier {label}: discounted price must be greater than 0", (index,))
                    )
                if price_storable and discounted >= unit_price:
                    issues.append(
                        ValidationIssue(
                            "invalid_discount",
                            f"Tier {label}: discounted price must be lower than the unit price",
                            (index,),
                        )
                    )

        tier_upper = upper_bound(tier)
        for other_index in range(index + 1, len(ordered)):
            other = ordered[other_index]
            other_upper = upper_bound(other)
            if tier.min_quantity <= other_upper and other.min_quantity <= tier_upper:
                start = max(tier.min_quantity, other.min_quantity)
                end = min(tier_upper, other_upper)
                issues.append(
                    ValidationIssue(
                        "overlap",
                        f"Tiers {label} and {other_index + 1} overlap on quantities {_format_span(start, end)}",
                        (index, other_index),
                    )
                )

        # A wide earlier tier can cover the space between later neighbours.
        covered_to = max(covered_to, tier_upper)
        if policy.require_contiguous and index < len(ordered) - 1 and covered_to != math.inf:
            following = ordered[index + 1]
            if following.min_quantity > covered_to + 1:
                issues.append(
                    ValidationIssue(
                        "gap",
                        f"Gap between tier {label} (coverage ends at {covered_to}) "
                        f"and tier {label + 1} (starts at {following.min_quantity})",
                        (index, index + 1),
                    )
                )

    unbounded = tuple(index for index, tier in enumerate(ordered) if tier.max_quantity is None)
    if len(unbounded) > 1:
        issues.append(
            ValidationIssue("invalid_max", "Only the last tier can have an unlimited maximum quantity", unbounded)
        )

    return issues


def ensure_valid_tiers(
    tiers: Sequence[TierLike],
    policy: TierValidationPolicy | None = None,
    *,
    allow_empty: bool = False,
    product_id: str | None = None,
) -> None:
    issues = validate_tiers(tiers, policy, allow_empty=allow_empty)
    if not issues:
        return
    if any(issue.type == "empty_set" for issue in issues):
        raise EmptyInputError(issues, product_id=product_id)
    raise TierValidationError(issues, product_id=product_id)
