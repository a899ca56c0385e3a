from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from mercatur.core.config import get_settings
from mercatur.crm.api import (
    communications_router,
    contacts_router,
    customers_router,
    dashboard_router,
    deals_router,
    search_router,
)
from mercatur.metrics import generate_metrics_payload, metrics_content_type
from mercatur.profiles.api import router as profiles_router

router = APIRouter()
router.include_router(customers_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(communications_router)
router.include_router(search_router)
router.include_router(dashboard_router)
router.include_router(profiles_router)


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
