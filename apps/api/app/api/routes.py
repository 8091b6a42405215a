from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from app.core.auth import get_current_principal
from app.core.config import get_settings
from app.crm.api import (
    activities_router,
    app_error_response,
    business_lines_router,
    contacts_router,
    deals_router,
    icps_router,
    labels_router,
    leads_router,
    mutations_router,
    organizations_router,
    partners_router,
    pipelines_router,
    products_router,
    shares_router,
    stages_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import Principal
from app.platform.security.errors import AppError, ForbiddenError, NotFoundError
from app.platform.security.policies import require_principal

router = APIRouter()
# mutators and shares first so their literal segments win over /{record_id}
router.include_router(mutations_router)
router.include_router(shares_router)
router.include_router(deals_router)
router.include_router(contacts_router)
router.include_router(leads_router)
router.include_router(organizations_router)
router.include_router(partners_router)
router.include_router(activities_router)
router.include_router(icps_router)
router.include_router(pipelines_router)
router.include_router(stages_router)
router.include_router(products_router)
router.include_router(business_lines_router)
router.include_router(labels_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"], response_model=None)
async def me(
    request: Request,
    principal: Principal | None = Depends(get_current_principal),
) -> dict[str, Any] | JSONResponse:
    try:
        actor = require_principal(principal)
    except AppError as exc:
        return app_error_response(request, exc)
    return {
        "user_id": actor.user_id,
        "role": str(actor.role),
        "is_admin": actor.is_admin,
    }


@router.get("/metrics", tags=["system"], response_model=None)
def metrics(
    request: Request,
    principal: Principal | None = Depends(get_current_principal),
) -> Response:
    settings = get_settings()
    try:
        if not settings.metrics_enabled:
            raise NotFoundError()
        actor = require_principal(principal)
        if not actor.is_admin:
            raise ForbiddenError()
    except AppError as exc:
        return app_error_response(request, exc)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
