from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import get_current_principal
from app.core.database import get_db
from app.crm.schemas import (
    ActivityRead,
    BusinessLineRead,
    ContactRead,
    DealRead,
    ICPRead,
    LabelRead,
    LeadContactRead,
    LeadConversionRead,
    LeadRead,
    OrganizationRead,
    PartnerRead,
    PipelineRead,
    ProductRead,
    StageRead,
)
from app.crm.service import (
    OwnedEntityService,
    ReferenceCatalogService,
    activity_service,
    business_line_catalog_service,
    contact_service,
    deal_service,
    icp_service,
    label_catalog_service,
    lead_service,
    organization_service,
    partner_service,
    pipeline_catalog_service,
    product_catalog_service,
    stage_catalog_service,
)
from app.platform.security.context import Principal
from app.platform.security.errors import AppError
from app.sharing.schemas import SharedEntityGrantRead, ShareResult
from app.sharing.service import sharing_service


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


def app_error_response(request: Request, exc: AppError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def _page(
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
) -> dict[str, int | None]:
    return {"limit": limit, "offset": offset}


def build_owned_entity_router(
    *,
    plural: str,
    service: OwnedEntityService[Any],
    read_schema: type[Any],
    filters: Callable[..., dict[str, Any]],
) -> APIRouter:
    """Owner-scoped CRUD routes for one entity."""

    router = APIRouter(prefix=f"/api/crm/{plural}", tags=[f"crm.{plural}"])

    @router.get("", response_model=list[read_schema])
    def list_records(
        request: Request,
        owner: str | None = Query(default=None),
        sort: str | None = Query(default=None),
        entity_filters: dict[str, Any] = Depends(filters),
        page: dict[str, int | None] = Depends(_page),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.list(
                db,
                principal,
                owner=owner,
                filters=entity_filters,
                sort=sort,
                limit=page["limit"],
                offset=page["offset"],
            )
        except AppError as exc:
            return app_error_response(request, exc)

    @router.get("/{record_id}", response_model=read_schema | None)
    def get_record(
        request: Request,
        record_id: uuid.UUID,
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.get_by_id(db, principal, record_id)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.get("/{record_id}/shared-view", response_model=read_schema | None)
    def get_shared_view(
        request: Request,
        record_id: uuid.UUID,
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.get_shared_view(db, principal, record_id)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.post("", response_model=read_schema, status_code=status.HTTP_201_CREATED)
    def create_record(
        request: Request,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.create(db, principal, payload)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.patch("/{record_id}", response_model=read_schema)
    def update_record(
        request: Request,
        record_id: uuid.UUID,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.update(db, principal, record_id, payload)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.delete("/{record_id}", status_code=status.HTTP_200_OK, response_model=None)
    def delete_record(
        request: Request,
        record_id: uuid.UUID,
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            service.delete(db, principal, record_id)
            return {"status": "deleted"}
        except AppError as exc:
            return app_error_response(request, exc)

    return router


def build_catalog_router(
    *,
    plural: str,
    service: ReferenceCatalogService[Any],
    read_schema: type[Any],
    filters: Callable[..., dict[str, Any]],
) -> APIRouter:
    router = APIRouter(prefix=f"/api/crm/catalog/{plural}", tags=["crm.catalog"])

    @router.get("", response_model=list[read_schema])
    def list_items(
        request: Request,
        catalog_filters: dict[str, Any] = Depends(filters),
        page: dict[str, int | None] = Depends(_page),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.list(db, principal, filters=catalog_filters, limit=page["limit"], offset=page["offset"])
        except AppError as exc:
            return app_error_response(request, exc)

    @router.get("/{item_id}", response_model=read_schema)
    def get_item(
        request: Request,
        item_id: uuid.UUID,
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.get(db, principal, item_id)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.post("", response_model=read_schema, status_code=status.HTTP_201_CREATED)
    def create_item(
        request: Request,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.create(db, principal, payload)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.patch("/{item_id}", response_model=read_schema)
    def update_item(
        request: Request,
        item_id: uuid.UUID,
        payload: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            return service.update(db, principal, item_id, payload)
        except AppError as exc:
            return app_error_response(request, exc)

    @router.delete("/{item_id}", status_code=status.HTTP_200_OK, response_model=None)
    def delete_item(
        request: Request,
        item_id: uuid.UUID,
        db: Session = Depends(get_db),
        principal: Principal | None = Depends(get_current_principal),
    ) -> Any:
        try:
            service.delete(db, principal, item_id)
            return {"status": "deleted"}
        except AppError as exc:
            return app_error_response(request, exc)

    return router


def deal_filters(
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    stage_id: uuid.UUID | None = Query(default=None),
    organization_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
) -> dict[str, Any]:
    return {
        "search": search,
        "status": status_filter,
        "stage_id": stage_id,
        "organization_id": organization_id,
        "contact_id": contact_id,
    }


def contact_filters(
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    company: str | None = Query(default=None, pattern="^(organization|lead|partner|none)$"),
    organization_id: uuid.UUID | None = Query(default=None),
) -> dict[str, Any]:
    return {"search": search, "status": status_filter, "company": company, "organization_id": organization_id}


def lead_filters(
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    quality: str | None = Query(default=None),
) -> dict[str, Any]:
    return {"search": search, "status": status_filter, "quality": quality}


def organization_filters(
    search: str | None = Query(default=None),
    label_id: uuid.UUID | None = Query(default=None),
) -> dict[str, Any]:
    return {"search": search, "label_id": label_id}


def partner_filters(
    search: str | None = Query(default=None),
    partner_type: str | None = Query(default=None),
) -> dict[str, Any]:
    return {"search": search, "partner_type": partner_type}


def activity_filters(
    activity_type: str | None = Query(default=None, alias="type"),
    completed: bool | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    partner_id: uuid.UUID | None = Query(default=None),
) -> dict[str, Any]:
    return {
        "type": activity_type,
        "completed": completed,
        "deal_id": deal_id,
        "contact_id": contact_id,
        "lead_id": lead_id,
        "partner_id": partner_id,
    }


def icp_filters(
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
) -> dict[str, Any]:
    return {"search": search, "status": status_filter}


def no_filters() -> dict[str, Any]:
    return {}


def stage_filters(pipeline_id: uuid.UUID | None = Query(default=None)) -> dict[str, Any]:
    return {"pipeline_id": pipeline_id}


def product_filters(
    business_line_id: uuid.UUID | None = Query(default=None),
    is_active: bool | None = Query(default=None),
) -> dict[str, Any]:
    return {"business_line_id": business_line_id, "is_active": is_active}


deals_router = build_owned_entity_router(plural="deals", service=deal_service, read_schema=DealRead, filters=deal_filters)
contacts_router = build_owned_entity_router(
    plural="contacts", service=contact_service, read_schema=ContactRead, filters=contact_filters
)
leads_router = build_owned_entity_router(plural="leads", service=lead_service, read_schema=LeadRead, filters=lead_filters)
organizations_router = build_owned_entity_router(
    plural="organizations",
    service=organization_service,
    read_schema=OrganizationRead,
    filters=organization_filters,
)
partners_router = build_owned_entity_router(
    plural="partners", service=partner_service, read_schema=PartnerRead, filters=partner_filters
)
activities_router = build_owned_entity_router(
    plural="activities", service=activity_service, read_schema=ActivityRead, filters=activity_filters
)
icps_router = build_owned_entity_router(plural="icps", service=icp_service, read_schema=ICPRead, filters=icp_filters)

pipelines_router = build_catalog_router(
    plural="pipelines", service=pipeline_catalog_service, read_schema=PipelineRead, filters=no_filters
)
stages_router = build_catalog_router(
    plural="stages", service=stage_catalog_service, read_schema=StageRead, filters=stage_filters
)
products_router = build_catalog_router(
    plural="products", service=product_catalog_service, read_schema=ProductRead, filters=product_filters
)
business_lines_router = build_catalog_router(
    plural="business-lines",
    service=business_line_catalog_service,
    read_schema=BusinessLineRead,
    filters=no_filters,
)
labels_router = build_catalog_router(
    plural="labels", service=label_catalog_service, read_schema=LabelRead, filters=no_filters
)

mutations_router = APIRouter(prefix="/api/crm", tags=["crm.mutations"])
shares_router = APIRouter(prefix="/api/crm/shares", tags=["crm.shares"])


@mutations_router.patch("/deals/{deal_id}/stage", response_model=DealRead)
def update_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_stage(db, principal, deal_id, payload)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.post("/activities/{activity_id}/toggle-completed", response_model=ActivityRead)
def toggle_activity_completed(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.toggle_completed(db, principal, activity_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.patch("/activities/{activity_id}/due-date", response_model=ActivityRead)
def update_activity_due_date(
    request: Request,
    activity_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.update_due_date(db, principal, activity_id, payload)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.post("/partners/{partner_id}/last-contact", response_model=PartnerRead)
def update_partner_last_contact(
    request: Request,
    partner_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> PartnerRead | JSONResponse:
    try:
        return partner_service.update_last_contact(db, principal, partner_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.post("/leads/{lead_id}/convert", response_model=LeadConversionRead)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadConversionRead | JSONResponse:
    try:
        return lead_service.convert_to_organization(db, principal, lead_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.get("/leads/{lead_id}/contacts", response_model=list[LeadContactRead])
def list_lead_contacts(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LeadContactRead] | JSONResponse:
    try:
        return lead_service.list_contacts(db, principal, lead_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.post(
    "/leads/{lead_id}/contacts",
    response_model=LeadContactRead,
    status_code=status.HTTP_201_CREATED,
)
def create_lead_contact(
    request: Request,
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadContactRead | JSONResponse:
    try:
        return lead_service.create_contact(db, principal, lead_id, payload)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.patch("/leads/{lead_id}/contacts/{contact_id}", response_model=LeadContactRead)
def update_lead_contact(
    request: Request,
    lead_id: uuid.UUID,
    contact_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> LeadContactRead | JSONResponse:
    try:
        return lead_service.update_contact(db, principal, lead_id, contact_id, payload)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.delete("/leads/{lead_id}/contacts/{contact_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead_contact(
    request: Request,
    lead_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> Any:
    try:
        lead_service.delete_contact(db, principal, lead_id, contact_id)
        return {"status": "deleted"}
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.get("/leads/{lead_id}/labels", response_model=list[LabelRead])
def list_lead_labels(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LabelRead] | JSONResponse:
    try:
        return lead_service.list_labels(db, principal, lead_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.put("/leads/{lead_id}/labels", response_model=list[LabelRead])
def set_lead_labels(
    request: Request,
    lead_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LabelRead] | JSONResponse:
    try:
        return lead_service.set_labels(db, principal, lead_id, payload)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.post("/leads/{lead_id}/labels/{label_id}", response_model=list[LabelRead])
def add_lead_label(
    request: Request,
    lead_id: uuid.UUID,
    label_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LabelRead] | JSONResponse:
    try:
        return lead_service.add_label(db, principal, lead_id, label_id)
    except AppError as exc:
        return app_error_response(request, exc)


@mutations_router.delete("/leads/{lead_id}/labels/{label_id}", response_model=list[LabelRead])
def remove_lead_label(
    request: Request,
    lead_id: uuid.UUID,
    label_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[LabelRead] | JSONResponse:
    try:
        return lead_service.remove_label(db, principal, lead_id, label_id)
    except AppError as exc:
        return app_error_response(request, exc)


@shares_router.get("/mine", response_model=list[SharedEntityGrantRead])
def list_my_shares(
    request: Request,
    entity_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[SharedEntityGrantRead] | JSONResponse:
    try:
        return sharing_service.list_my_grants(db, principal, entity_type)
    except AppError as exc:
        return app_error_response(request, exc)


@shares_router.get("/{entity_type}/{entity_id}", response_model=list[SharedEntityGrantRead])
def list_record_shares(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> list[SharedEntityGrantRead] | JSONResponse:
    try:
        return sharing_service.list_record_grants(db, principal, entity_type, entity_id)
    except AppError as exc:
        return app_error_response(request, exc)


@shares_router.put("/{entity_type}/{entity_id}/{user_id}", response_model=ShareResult)
def share_record(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> ShareResult | JSONResponse:
    try:
        return sharing_service.share(db, principal, entity_type, entity_id, user_id)
    except AppError as exc:
        return app_error_response(request, exc)


@shares_router.delete("/{entity_type}/{entity_id}/{user_id}", response_model=ShareResult)
def unshare_record(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    principal: Principal | None = Depends(get_current_principal),
) -> ShareResult | JSONResponse:
    try:
        return sharing_service.unshare(db, principal, entity_type, entity_id, user_id)
    except AppError as exc:
        return app_error_response(request, exc)
