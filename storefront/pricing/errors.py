from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storefront.pricing.validation import ValidationIssue


class PricingError(Exception):
    """Base error for the tiered pricing engine."""


class TierValidationError(PricingError):
    """Raised when a tier set breaks one or more structural or pricing rules."""

    def __init__(self, issues: list[ValidationIssue], *, product_id: str | None = None) -> None:
        self.issues = list(issues)
        self.product_id = product_id
        self.rules = sorted({issue.type for issue in self.issues})
        summary = "; ".join(issue.message for issue in self.issues) or "invalid price tiers"
        if product_id is not None:
            summary = f"{summary} (product {product_id})"
        super().__init__(summary)


class EmptyInputError(TierValidationError):
    """Raised when a product is given a tier set with no bands."""


class TierStoreUnavailableError(PricingError):
    """Raised when the tier store fails for infrastructure reasons. Safe to retry."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


class InvalidQuantityError(PricingError, ValueError):
    def __init__(self, quantity: int) -> None:
        self.quantity = quantity
        super().__init__(f"quantity must be at least 1, got {quantity}")


class ModeChangeConfirmationError(PricingError):
    """Raised when a confirmation token does not match the pending mode change."""
