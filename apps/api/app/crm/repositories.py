from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.sql import ColumnElement

from app.crm.models import (
    CRMICP,
    CRMActivity,
    CRMBusinessLine,
    CRMContact,
    CRMDeal,
    CRMLabel,
    CRMLead,
    CRMLeadContact,
    CRMOrganization,
    CRMPartner,
    CRMPipeline,
    CRMProduct,
    CRMStage,
)
from app.platform.security.repository import BaseRepository


def _like(value: str) -> str:
    return f"%{value.strip()}%"


class CRMRepository(BaseRepository[Any]):
    """Adds entity filters on top of the generic persistence contract."""

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        return []


class DealRepository(CRMRepository):
    resource = "deal"
    model = CRMDeal
    default_order_by = ("-created_at",)
    sortable_fields = frozenset({"title", "value", "status", "expected_close_date", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(
                or_(
                    CRMDeal.title.ilike(pattern),
                    CRMDeal.contact_id.in_(select(CRMContact.id).where(CRMContact.name.ilike(pattern))),
                    CRMDeal.organization_id.in_(select(CRMOrganization.id).where(CRMOrganization.name.ilike(pattern))),
                )
            )
        if filters.get("status"):
            criteria.append(CRMDeal.status == filters["status"])
        if filters.get("stage_id"):
            criteria.append(CRMDeal.stage_id == filters["stage_id"])
        if filters.get("organization_id"):
            criteria.append(CRMDeal.organization_id == filters["organization_id"])
        if filters.get("contact_id"):
            criteria.append(CRMDeal.contact_id == filters["contact_id"])
        return criteria


class ContactRepository(CRMRepository):
    resource = "contact"
    model = CRMContact
    default_order_by = ("-is_primary", "name")
    sortable_fields = frozenset({"name", "email", "status", "is_primary", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(
                or_(
                    CRMContact.name.ilike(pattern),
                    CRMContact.email.ilike(pattern),
                    CRMContact.phone.ilike(pattern),
                )
            )
        if filters.get("status"):
            criteria.append(CRMContact.status == filters["status"])

        company = filters.get("company")
        if company == "organization":
            criteria.append(CRMContact.organization_id.is_not(None))
        elif company == "lead":
            criteria.append(CRMContact.lead_id.is_not(None))
        elif company == "partner":
            criteria.append(CRMContact.partner_id.is_not(None))
        elif company == "none":
            criteria.append(CRMContact.organization_id.is_(None))
            criteria.append(CRMContact.lead_id.is_(None))
            criteria.append(CRMContact.partner_id.is_(None))

        if filters.get("organization_id"):
            criteria.append(CRMContact.organization_id == filters["organization_id"])
        return criteria


class LeadRepository(CRMRepository):
    resource = "lead"
    model = CRMLead
    default_order_by = ("-created_at",)
    sortable_fields = frozenset({"business_name", "status", "quality", "rating", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(
                or_(
                    CRMLead.business_name.ilike(pattern),
                    CRMLead.registered_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                )
            )
        if filters.get("status"):
            criteria.append(CRMLead.status == filters["status"])
        if filters.get("quality"):
            criteria.append(CRMLead.quality == filters["quality"])
        return criteria


class LeadContactRepository(BaseRepository[CRMLeadContact]):
    resource = "lead_contact"
    model = CRMLeadContact
    default_order_by = ("-is_primary", "created_at")


class OrganizationRepository(CRMRepository):
    resource = "organization"
    model = CRMOrganization
    default_order_by = ("-created_at",)
    sortable_fields = frozenset({"name", "industry", "employee_count", "annual_revenue", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(or_(CRMOrganization.name.ilike(pattern), CRMOrganization.website.ilike(pattern)))
        if filters.get("label_id"):
            criteria.append(CRMOrganization.label_id == filters["label_id"])
        return criteria


class PartnerRepository(CRMRepository):
    resource = "partner"
    model = CRMPartner
    default_order_by = ("-last_contact_date", "-created_at")
    sortable_fields = frozenset({"name", "partner_type", "last_contact_date", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(
                or_(
                    CRMPartner.name.ilike(pattern),
                    CRMPartner.partner_type.ilike(pattern),
                    CRMPartner.expertise.ilike(pattern),
                )
            )
        if filters.get("partner_type"):
            criteria.append(CRMPartner.partner_type == filters["partner_type"])
        return criteria


class ActivityRepository(CRMRepository):
    resource = "activity"
    model = CRMActivity
    default_order_by = ("completed", "due_date", "-created_at")
    sortable_fields = frozenset({"type", "subject", "due_date", "completed", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("type"):
            criteria.append(CRMActivity.type == filters["type"])
        if filters.get("completed") is not None:
            criteria.append(CRMActivity.completed.is_(bool(filters["completed"])))
        for field_name in ("deal_id", "contact_id", "lead_id", "partner_id"):
            if filters.get(field_name):
                criteria.append(getattr(CRMActivity, field_name) == filters[field_name])
        return criteria


class ICPRepository(CRMRepository):
    resource = "icp"
    model = CRMICP
    default_order_by = ("-created_at",)
    sortable_fields = frozenset({"name", "slug", "status", "created_at", "updated_at"})

    def build_criteria(self, filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []
        if filters.get("search"):
            pattern = _like(filters["search"])
            criteria.append(or_(CRMICP.name.ilike(pattern), CRMICP.slug.ilike(pattern)))
        if filters.get("status"):
            criteria.append(CRMICP.status == filters["status"])
        return criteria


class PipelineRepository(BaseRepository[CRMPipeline]):
    resource = "pipeline"
    model = CRMPipeline
    default_order_by = ("-is_default", "name")


class StageRepository(BaseRepository[CRMStage]):
    resource = "stage"
    model = CRMStage
    default_order_by = ("order",)


class ProductRepository(BaseRepository[CRMProduct]):
    resource = "product"
    model = CRMProduct
    default_order_by = ("name",)


class BusinessLineRepository(BaseRepository[CRMBusinessLine]):
    resource = "business_line"
    model = CRMBusinessLine
    default_order_by = ("name",)


class LabelRepository(BaseRepository[CRMLabel]):
    resource = "label"
    model = CRMLabel
    default_order_by = ("name",)
