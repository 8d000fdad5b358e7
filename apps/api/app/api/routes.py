from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from app.business.catalog.api import router as products_router
from app.business.revenue.api import order_items_router, router as orders_router
from app.core.config import get_settings
from app.crm.api import (
    accounts_router,
    activities_router,
    contacts_router,
    dashboard_router,
    leads_router,
    notes_router,
    opportunities_router,
    users_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(users_router)
router.include_router(accounts_router)
router.include_router(contacts_router)
router.include_router(leads_router)
router.include_router(opportunities_router)
router.include_router(activities_router)
router.include_router(notes_router)
router.include_router(dashboard_router)
router.include_router(products_router)
router.include_router(orders_router)
router.include_router(order_items_router)


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
