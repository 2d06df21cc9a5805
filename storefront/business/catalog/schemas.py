from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PricingModeName = Literal["simple", "tiered"]
ValidationIssueType = Literal[
    "overlap",
    "gap",
    "invalid_min",
    "invalid_max",
    "invalid_price",
    "invalid_discount",
    "empty_set",
]


class CatalogProductCreate(BaseModel):
    seller_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: Decimal | None = Field(default=None, ge=Decimal("0"), max_digits=12, decimal_places=2)
    discounted_price: Decimal | None = Field(default=None, gt=Decimal("0"), max_digits=12, decimal_places=2)
    has_tiered_pricing: bool = False


class CatalogProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    seller_id: str
    name: str
    price: Decimal | None
    discounted_price: Decimal | None
    has_tiered_pricing: bool
    created_at: datetime
    updated_at: datetime


class PriceTierInput(BaseModel):
    # Bounds and prices are checked by the tier validator so every violation
    # comes back with its rule name instead of a generic schema error.
    min_quantity: int
    max_quantity: int | None = None
    unit_price: Decimal
    discounted_unit_price: Decimal | None = None


class PriceTierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    min_quantity: int
    max_quantity: int | None
    unit_price: Decimal
    discounted_unit_price: Decimal | None
    created_at: datetime


class PriceTierReplace(BaseModel):
    tiers: list[PriceTierInput]


class ValidationIssueRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: ValidationIssueType
    message: str
    tier_indexes: list[int] = Field(default_factory=list)
    tier_index: int | None = None


class TierValidationReport(BaseModel):
    valid: bool
    errors: list[ValidationIssueRead]


class PricingQuoteRead(BaseModel):
    product_id: UUID
    pricing_mode: PricingModeName
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    applied_tier: PriceTierRead | None
    savings: Decimal
    next_tier: PriceTierRead | None
    next_tier_savings: Decimal
    units_to_next_tier: int
    used_fallback: bool


class PriceTableRowRead(BaseModel):
    tier: PriceTierRead
    range_label: str
    unit_price: Decimal
    total_at_min_quantity: Decimal
    savings: Decimal
    savings_percentage: int
    is_best_value: bool


class PriceTableRead(BaseModel):
    product_id: UUID
    pricing_mode: PricingModeName
    fallback_unit_price: Decimal
    minimum_tier_price: Decimal | None
    rows: list[PriceTableRowRead]


class PricingModeChangeRequest(BaseModel):
    target_mode: PricingModeName
    confirmation_token: str | None = Field(default=None, min_length=1)


class PricingModeChangeRead(BaseModel):
    product_id: UUID
    current_mode: PricingModeName
    target_mode: PricingModeName
    applied: bool
    requires_confirmation: bool
    discards: PricingModeName | None = None
    confirmation_token: str | None = None
