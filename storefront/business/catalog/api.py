from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.business.catalog.schemas import (
    CatalogProductCreate,
    CatalogProductRead,
    PriceTableRead,
    PriceTierRead,
    PriceTierReplace,
    PricingModeChangeRead,
    PricingModeChangeRequest,
    PricingQuoteRead,
    TierValidationReport,
    ValidationIssueRead,
)
from storefront.business.catalog.service import catalog_service
from storefront.context import get_correlation_id
from storefront.core.database import get_db
from storefront.pricing.errors import ModeChangeConfirmationError, TierStoreUnavailableError, TierValidationError


router = APIRouter(prefix="/catalog", tags=["catalog"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _tier_validation_response(request: Request, exc: TierValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="price_tiers_invalid",
        message=str(exc),
        details=[ValidationIssueRead.model_validate(issue).model_dump() for issue in exc.issues],
    )


def _store_unavailable_response(request: Request, exc: TierStoreUnavailableError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="price_tiers_store_unavailable",
        message=str(exc),
        details={"timed_out": exc.timed_out, "retryable": True},
    )


@router.post("/products", response_model=CatalogProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    request: Request,
    dto: CatalogProductCreate,
    db: Session = Depends(get_db),
) -> CatalogProductRead | JSONResponse:
    try:
        return catalog_service.create_product(db, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="catalog_product_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/products/{product_id}", response_model=CatalogProductRead)
def get_product(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CatalogProductRead | JSONResponse:
    try:
        return catalog_service.get_product(db, product_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="catalog_product_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/products/{product_id}/price-tiers", response_model=list[PriceTierRead])
def list_price_tiers(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> list[PriceTierRead] | JSONResponse:
    try:
        return catalog_service.list_tiers(db, product_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="price_tiers_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.put("/products/{product_id}/price-tiers", response_model=list[PriceTierRead])
def replace_price_tiers(
    request: Request,
    product_id: uuid.UUID,
    dto: PriceTierReplace,
    db: Session = Depends(get_db),
    actor_user_id: str | None = Header(default=None, alias="x-actor-id"),
) -> list[PriceTierRead] | JSONResponse:
    try:
        return catalog_service.replace_tiers(db, product_id, dto.tiers, actor_user_id=actor_user_id)
    except TierValidationError as exc:
        return _tier_validation_response(request, exc)
    except TierStoreUnavailableError as exc:
        return _store_unavailable_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="price_tiers_replace_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/price-tiers/validate", response_model=TierValidationReport)
def validate_price_tiers(dto: PriceTierReplace) -> TierValidationReport:
    return catalog_service.preview_tiers(dto.tiers)


@router.get("/products/{product_id}/quote", response_model=PricingQuoteRead)
def quote_price(
    request: Request,
    product_id: uuid.UUID,
    quantity: int = Query(ge=1),
    db: Session = Depends(get_db),
) -> PricingQuoteRead | JSONResponse:
    try:
        return catalog_service.quote_price(db, product_id, quantity)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="price_quote_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/products/{product_id}/price-table", response_model=PriceTableRead)
def price_table(
    request: Request,
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> PriceTableRead | JSONResponse:
    try:
        return catalog_service.price_table(db, product_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="price_table_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/products/{product_id}/pricing-mode", response_model=PricingModeChangeRead)
def change_pricing_mode(
    request: Request,
    response: Response,
    product_id: uuid.UUID,
    dto: PricingModeChangeRequest,
    db: Session = Depends(get_db),
    actor_user_id: str | None = Header(default=None, alias="x-actor-id"),
) -> PricingModeChangeRead | JSONResponse:
    try:
        result = catalog_service.change_pricing_mode(db, product_id, dto, actor_user_id=actor_user_id)
    except ModeChangeConfirmationError as exc:
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            code="pricing_mode_confirmation_invalid",
            message=str(exc),
            details={"target_mode": dto.target_mode},
        )
    except TierStoreUnavailableError as exc:
        return _store_unavailable_response(request, exc)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="pricing_mode_change_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    if result.requires_confirmation:
        response.status_code = status.HTTP_202_ACCEPTED
    return result
