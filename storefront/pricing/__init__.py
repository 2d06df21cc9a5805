from storefront.pricing.errors import (
    EmptyInputError,
    InvalidQuantityError,
    ModeChangeConfirmationError,
    PricingError,
    TierStoreUnavailableError,
    TierValidationError,
)
from storefront.pricing.mode import ModeChangeDecision, PricingMode, PricingModeCoordinator
from storefront.pricing.resolver import (
    PriceTableRow,
    PricingResult,
    TierMatching,
    best_value_tier,
    build_price_table,
    effective_unit_price,
    format_tier_range,
    minimum_tier_price,
    resolve_price,
    savings_percentage,
)
from storefront.pricing.validation import (
    TierValidationPolicy,
    ValidationIssue,
    ensure_valid_tiers,
    sort_tiers,
    validate_tiers,
)

__all__ = [
    "PricingError",
    "TierValidationError",
    "EmptyInputError",
    "TierStoreUnavailableError",
    "InvalidQuantityError",
    "ModeChangeConfirmationError",
    "PricingMode",
    "ModeChangeDecision",
    "PricingModeCoordinator",
    "TierMatching",
    "PricingResult",
    "PriceTableRow",
    "resolve_price",
    "effective_unit_price",
    "minimum_tier_price",
    "best_value_tier",
    "savings_percentage",
    "format_tier_range",
    "build_price_table",
    "TierValidationPolicy",
    "ValidationIssue",
    "validate_tiers",
    "ensure_valid_tiers",
    "sort_tiers",
]
