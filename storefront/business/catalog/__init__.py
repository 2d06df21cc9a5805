from storefront.business.catalog.api import router
from storefront.business.catalog.models import CatalogProduct, ProductPriceTier
from storefront.business.catalog.schemas import (
    CatalogProductCreate,
    CatalogProductRead,
    PriceTableRead,
    PriceTierInput,
    PriceTierRead,
    PriceTierReplace,
    PricingModeChangeRead,
    PricingModeChangeRequest,
    PricingQuoteRead,
    TierValidationReport,
)
from storefront.business.catalog.service import CatalogService, catalog_service

__all__ = [
    "router",
    "CatalogProduct",
    "ProductPriceTier",
    "CatalogProductCreate",
    "CatalogProductRead",
    "PriceTierInput",
    "PriceTierRead",
    "PriceTierReplace",
    "TierValidationReport",
    "PricingQuoteRead",
    "PriceTableRead",
    "PricingModeChangeRequest",
    "PricingModeChangeRead",
    "CatalogService",
    "catalog_service",
]
