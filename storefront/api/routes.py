from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from storefront.business.catalog.api import router as catalog_router
from storefront.core.config import get_settings
from storefront.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(catalog_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
