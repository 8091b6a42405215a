from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm import messages
from app.crm.models import (
    CRMContact,
    CRMDeal,
    CRMLabel,
    CRMLead,
    CRMLeadContact,
    CRMOrganization,
    CRMPartner,
    CRMStage,
)
from app.crm.repositories import (
    ActivityRepository,
    BusinessLineRepository,
    ContactRepository,
    CRMRepository,
    DealRepository,
    ICPRepository,
    LabelRepository,
    LeadContactRepository,
    LeadRepository,
    OrganizationRepository,
    PartnerRepository,
    PipelineRepository,
    ProductRepository,
    StageRepository,
)
from app.crm.schemas import (
    ActivityCreate,
    ActivityDueDateUpdate,
    ActivityRead,
    ActivityUpdate,
    BusinessLineCreate,
    BusinessLineRead,
    BusinessLineUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealStageUpdate,
    DealUpdate,
    ICPCreate,
    ICPRead,
    ICPUpdate,
    LabelCreate,
    LabelRead,
    LabelUpdate,
    LeadContactCreate,
    LeadContactRead,
    LeadContactUpdate,
    LeadConversionRead,
    LeadCreate,
    LeadLabelsUpdate,
    LeadRead,
    LeadUpdate,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    PartnerCreate,
    PartnerRead,
    PartnerUpdate,
    PipelineCreate,
    PipelineRead,
    PipelineUpdate,
    ProductCreate,
    ProductRead,
    ProductUpdate,
    StageCreate,
    StageRead,
    StageUpdate,
)
from app.metrics import observe_crm_action, observe_shared_read
from app.otel import crm_action_span
from app.platform.security.context import Principal
from app.platform.security.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.platform.security.policies import (
    can_access_record,
    compute_list_filter,
    compute_record_filter,
    require_principal,
)
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import validate_owner_write
from app.sharing.service import SharedEntityGrantStore


logger = logging.getLogger("app.crm")

ReadT = TypeVar("ReadT", bound=BaseModel)

_EVENT_SUFFIXES = {
    "create": "created",
    "update": "updated",
    "delete": "deleted",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def snapshot(record: Any) -> dict[str, Any]:
    mapper = inspect(record).mapper
    return {attr.key: _jsonable(getattr(record, attr.key)) for attr in mapper.column_attrs}


def validate_payload(schema: type[BaseModel], data: Mapping[str, Any] | BaseModel) -> Any:
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def resolve_page(limit: int | None, offset: int | None) -> tuple[int | None, int]:
    """Without a limit every visible row is returned; an explicit limit is capped."""
    size = None if limit is None else max(1, min(limit, get_settings().max_page_size))
    return size, max(0, offset or 0)


def resolve_sort(repository: BaseRepository[Any], sort: str | None) -> tuple[str, ...] | None:
    """Parse `field,-other` into order_by terms, restricted to the repository's sortable columns."""
    if not sort:
        return None
    terms = tuple(item.strip() for item in sort.split(",") if item.strip())
    invalid = [term for term in terms if term.lstrip("-") not in repository.sortable_fields]
    if invalid or not terms:
        raise ValidationError.for_field("sort", messages.INVALID_SORT)
    return terms


@dataclass
class ActionScope:
    entity_id: str | None = None


class _ActionMixin:
    entity_type: ClassVar[str] = ""

    def _authenticate(self, principal: Principal | None, action: str) -> Principal:
        try:
            return require_principal(principal)
        except UnauthorizedError:
            observe_crm_action(self.entity_type, action, "unauthorized")
            logger.warning("crm.unauthorized", extra={"action": action, "entity_type": self.entity_type})
            raise

    @contextmanager
    def _action(self, session: Session, actor: Principal, action: str) -> Iterator[ActionScope]:
        scope = ActionScope()
        with crm_action_span(self.entity_type, action, str(actor.role)) as span:
            try:
                yield scope
            except AppError as exc:
                session.rollback()
                observe_crm_action(self.entity_type, action, exc.code.lower())
                raise
            except Exception:
                session.rollback()
                observe_crm_action(self.entity_type, action, "error")
                raise

            if scope.entity_id is not None:
                span.set_attribute("crm.entity_id", scope.entity_id)
        observe_crm_action(self.entity_type, action, "success")
        logger.info(
            "crm.action",
            extra={
                "action": action,
                "entity_type": self.entity_type,
                "entity_id": scope.entity_id,
                "user_id": actor.user_id,
                "role": str(actor.role),
            },
        )

    def _record_change(
        self,
        actor: Principal,
        record: Any,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        entity_id = str(record.id)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=f"crm.{self.entity_type}",
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"crm.{self.entity_type}.{_EVENT_SUFFIXES.get(action, action)}",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "correlation_id": actor.correlation_id,
                "payload": {
                    f"{self.entity_type}_id": entity_id,
                    "owner_id": getattr(record, "owner_id", None),
                },
            }
        )

    def _reject_nulls(self, model: type[Any], changes: Mapping[str, Any]) -> None:
        columns = inspect(model).columns
        fields: dict[str, list[str]] = {}
        for field_name, value in changes.items():
            column = columns.get(field_name)
            if value is None and column is not None and not column.nullable:
                fields[field_name] = ["Campo não pode ser nulo"]
        if fields:
            raise ValidationError(fields=fields)


class OwnedEntityService(_ActionMixin, Generic[ReadT]):
    """Owner-scoped CRUD over one entity.

    Reads apply the ownership clause inside the query. Writes look the record
    up by id, then require owner or admin, and report a foreign record with the
    same not-found error as a missing one.
    """

    not_found_message: ClassVar[str] = NotFoundError.default_message
    repository_class: ClassVar[type[CRMRepository]]
    # column -> (referenced model, message); checked on create and update
    reference_fields: ClassVar[dict[str, tuple[type[Any], str]]] = {}
    create_schema: ClassVar[type[BaseModel]]
    update_schema: ClassVar[type[BaseModel]]
    read_schema: ClassVar[type[BaseModel]]

    def __init__(self, repository: CRMRepository | None = None) -> None:
        self.repository = repository or self.repository_class()

    def list(
        self,
        session: Session,
        principal: Principal | None,
        *,
        owner: str | None = None,
        filters: Mapping[str, Any] | None = None,
        sort: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ReadT]:
        actor = self._authenticate(principal, "list")
        with self._action(session, actor, "list"):
            page_size, page_offset = resolve_page(limit, offset)
            rows = self.repository.find_many(
                session,
                compute_list_filter(actor, owner),
                self.repository.build_criteria(filters or {}),
                order_by=resolve_sort(self.repository, sort),
                limit=page_size,
                offset=page_offset,
            )
            return [self._to_read(row) for row in rows]

    def get_by_id(self, session: Session, principal: Principal | None, record_id: uuid.UUID) -> ReadT | None:
        actor = self._authenticate(principal, "get")
        with self._action(session, actor, "get") as scope:
            scope.entity_id = str(record_id)
            record = self.repository.find_one(
                session,
                compute_record_filter(actor),
                [self.repository.model.id == record_id],
            )
            if record is None:
                return None
            return self._to_read(record)

    def get_shared_view(self, session: Session, principal: Principal | None, record_id: uuid.UUID) -> ReadT | None:
        """Single-record read that also honours sharing grants."""

        actor = self._authenticate(principal, "shared_view")
        with self._action(session, actor, "shared_view") as scope:
            scope.entity_id = str(record_id)
            record = self.repository.find_by_id(session, record_id)
            if record is None:
                return None
            if not can_access_record(actor, self.entity_type, record, SharedEntityGrantStore(session)):
                return None
            if not actor.is_admin and record.owner_id != actor.user_id:
                observe_shared_read(self.entity_type)
            return self._to_read(record)

    def create(self, session: Session, principal: Principal | None, data: Mapping[str, Any] | BaseModel) -> ReadT:
        actor = self._authenticate(principal, "create")
        with self._action(session, actor, "create") as scope:
            dto = validate_payload(self.create_schema, data)
            values = self._prepare_create(session, actor, dto)
            self._check_references(session, values)
            values["owner_id"] = actor.user_id
            record = self.repository.create(session, values)
            scope.entity_id = str(record.id)
            self._after_create(session, actor, record, dto)
            self._record_change(actor, record, "create", None, snapshot(record))
            session.commit()
            session.refresh(record)
            return self._to_read(record)

    def update(
        self,
        session: Session,
        principal: Principal | None,
        record_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> ReadT:
        actor = self._authenticate(principal, "update")
        with self._action(session, actor, "update") as scope:
            record = self._load_for_write(session, actor, record_id, "update")
            scope.entity_id = str(record.id)
            dto = validate_payload(self.update_schema, data)
            changes = dto.model_dump(exclude_unset=True)
            changes.pop("owner_id", None)
            changes = self._prepare_update(session, actor, record, changes)
            self._reject_nulls(self.repository.model, changes)
            self._check_references(session, changes)

            before = snapshot(record)
            self.repository.update(session, record, changes)
            self._record_change(actor, record, "update", before, snapshot(record))
            session.commit()
            session.refresh(record)
            return self._to_read(record)

    def delete(self, session: Session, principal: Principal | None, record_id: uuid.UUID) -> None:
        actor = self._authenticate(principal, "delete")
        with self._action(session, actor, "delete") as scope:
            record = self._load_for_write(session, actor, record_id, "delete")
            scope.entity_id = str(record.id)
            self._before_delete(session, actor, record)
            before = snapshot(record)
            self.repository.delete(session, record)
            self._record_change(actor, record, "delete", before, None)
            session.commit()

    def _load_for_write(self, session: Session, actor: Principal, record_id: uuid.UUID, action: str) -> Any:
        return validate_owner_write(
            self.entity_type,
            self.repository.find_by_id(session, record_id),
            actor,
            not_found_message=self.not_found_message,
            action=action,
        )

    def _save_mutation(self, session: Session, actor: Principal, record: Any, action: str, before: dict[str, Any]) -> ReadT:
        session.add(record)
        session.flush()
        self._record_change(actor, record, action, before, snapshot(record))
        session.commit()
        session.refresh(record)
        return self._to_read(record)

    def _check_references(self, session: Session, values: Mapping[str, Any]) -> None:
        fields = self._missing_references(session, values)
        if fields:
            raise ValidationError(fields=fields)

    def _missing_references(self, session: Session, values: Mapping[str, Any]) -> dict[str, list[str]]:
        fields: dict[str, list[str]] = {}
        for field_name, (model, message) in self.reference_fields.items():
            value = values.get(field_name)
            if value is not None and session.get(model, value) is None:
                fields[field_name] = [message]
        return fields

    def _prepare_create(self, session: Session, actor: Principal, dto: Any) -> dict[str, Any]:
        return dto.model_dump()

    def _after_create(self, session: Session, actor: Principal, record: Any, dto: Any) -> None:
        return None

    def _prepare_update(self, session: Session, actor: Principal, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        return changes

    def _before_delete(self, session: Session, actor: Principal, record: Any) -> None:
        return None

    def _to_read(self, record: Any) -> ReadT:
        return self.read_schema.model_validate(record)  # type: ignore[return-value]


def _require_stage(session: Session, stage_id: uuid.UUID) -> CRMStage:
    stage = session.get(CRMStage, stage_id)
    if stage is None:
        raise ValidationError.for_field("stage_id", messages.STAGE_NOT_FOUND)
    return stage


class DealService(OwnedEntityService[DealRead]):
    entity_type = "deal"
    not_found_message = messages.DEAL_NOT_FOUND
    repository_class = DealRepository
    create_schema = DealCreate
    update_schema = DealUpdate
    read_schema = DealRead
    reference_fields = {
        "contact_id": (CRMContact, messages.CONTACT_NOT_FOUND),
        "organization_id": (CRMOrganization, messages.ORGANIZATION_NOT_FOUND),
    }

    def update_stage(
        self,
        session: Session,
        principal: Principal | None,
        deal_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> DealRead:
        actor = self._authenticate(principal, "update_stage")
        with self._action(session, actor, "update_stage") as scope:
            deal = self._load_for_write(session, actor, deal_id, "update_stage")
            scope.entity_id = str(deal.id)
            dto = validate_payload(DealStageUpdate, data)
            stage = _require_stage(session, dto.stage_id)

            before = snapshot(deal)
            deal.stage_id = stage.id
            return self._save_mutation(session, actor, deal, "stage_changed", before)

    def _prepare_create(self, session: Session, actor: Principal, dto: DealCreate) -> dict[str, Any]:
        _require_stage(session, dto.stage_id)
        values = dto.model_dump()
        if "currency" not in dto.model_fields_set:
            values["currency"] = get_settings().default_currency
        values["currency"] = values["currency"].upper()
        return values

    def _prepare_update(self, session: Session, actor: Principal, record: CRMDeal, changes: dict[str, Any]) -> dict[str, Any]:
        if changes.get("stage_id") is not None:
            _require_stage(session, changes["stage_id"])
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()
        return changes


class ContactService(OwnedEntityService[ContactRead]):
    entity_type = "contact"
    not_found_message = messages.CONTACT_NOT_FOUND
    repository_class = ContactRepository
    create_schema = ContactCreate
    update_schema = ContactUpdate
    read_schema = ContactRead

    _company_models: ClassVar[dict[str, tuple[type[Any], str]]] = {
        "organization": (CRMOrganization, "organization_id"),
        "lead": (CRMLead, "lead_id"),
        "partner": (CRMPartner, "partner_id"),
    }

    def _prepare_create(self, session: Session, actor: Principal, dto: ContactCreate) -> dict[str, Any]:
        values = dto.model_dump(exclude={"company_type", "company_id"})
        values.update(self._resolve_company(session, dto.company_type, dto.company_id))
        return values

    def _prepare_update(self, session: Session, actor: Principal, record: CRMContact, changes: dict[str, Any]) -> dict[str, Any]:
        if "company_type" in changes or "company_id" in changes:
            company_type = changes.pop("company_type", None)
            company_id = changes.pop("company_id", None)
            changes.update(self._resolve_company(session, company_type, company_id))
        return changes

    def _resolve_company(self, session: Session, company_type: str | None, company_id: uuid.UUID | None) -> dict[str, Any]:
        links: dict[str, Any] = {"organization_id": None, "lead_id": None, "partner_id": None}
        if company_type is None and company_id is None:
            return links
        if company_type is None or company_id is None:
            raise ValidationError.for_field("company_id", messages.INVALID_COMPANY)

        model, column = self._company_models[company_type]
        if session.get(model, company_id) is None:
            raise ValidationError.for_field("company_id", messages.INVALID_COMPANY)
        links[column] = company_id
        return links


class OrganizationService(OwnedEntityService[OrganizationRead]):
    entity_type = "organization"
    not_found_message = messages.ORGANIZATION_NOT_FOUND
    repository_class = OrganizationRepository
    create_schema = OrganizationCreate
    update_schema = OrganizationUpdate
    read_schema = OrganizationRead
    reference_fields = {"label_id": (CRMLabel, messages.LABEL_NOT_FOUND)}


class PartnerService(OwnedEntityService[PartnerRead]):
    entity_type = "partner"
    not_found_message = messages.PARTNER_NOT_FOUND
    repository_class = PartnerRepository
    create_schema = PartnerCreate
    update_schema = PartnerUpdate
    read_schema = PartnerRead

    def update_last_contact(self, session: Session, principal: Principal | None, partner_id: uuid.UUID) -> PartnerRead:
        actor = self._authenticate(principal, "update_last_contact")
        with self._action(session, actor, "update_last_contact") as scope:
            partner = self._load_for_write(session, actor, partner_id, "update_last_contact")
            scope.entity_id = str(partner.id)
            before = snapshot(partner)
            partner.last_contact_date = utcnow()
            return self._save_mutation(session, actor, partner, "last_contact_updated", before)

    def _prepare_create(self, session: Session, actor: Principal, dto: PartnerCreate) -> dict[str, Any]:
        values = dto.model_dump()
        values["last_contact_date"] = utcnow()
        return values


class ActivityService(OwnedEntityService[ActivityRead]):
    entity_type = "activity"
    not_found_message = messages.ACTIVITY_NOT_FOUND
    repository_class = ActivityRepository
    create_schema = ActivityCreate
    update_schema = ActivityUpdate
    read_schema = ActivityRead
    reference_fields = {
        "deal_id": (CRMDeal, messages.DEAL_NOT_FOUND),
        "contact_id": (CRMContact, messages.CONTACT_NOT_FOUND),
        "lead_id": (CRMLead, messages.LEAD_NOT_FOUND),
        "partner_id": (CRMPartner, messages.PARTNER_NOT_FOUND),
    }

    def toggle_completed(self, session: Session, principal: Principal | None, activity_id: uuid.UUID) -> ActivityRead:
        actor = self._authenticate(principal, "toggle_completed")
        with self._action(session, actor, "toggle_completed") as scope:
            activity = self._load_for_write(session, actor, activity_id, "toggle_completed")
            scope.entity_id = str(activity.id)
            before = snapshot(activity)
            activity.completed = not activity.completed
            return self._save_mutation(
                session,
                actor,
                activity,
                "completed" if activity.completed else "reopened",
                before,
            )

    def update_due_date(
        self,
        session: Session,
        principal: Principal | None,
        activity_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> ActivityRead:
        actor = self._authenticate(principal, "update_due_date")
        with self._action(session, actor, "update_due_date") as scope:
            activity = self._load_for_write(session, actor, activity_id, "update_due_date")
            scope.entity_id = str(activity.id)
            dto = validate_payload(ActivityDueDateUpdate, data)
            before = snapshot(activity)
            activity.due_date = dto.due_date
            return self._save_mutation(session, actor, activity, "due_date_changed", before)

    def _prepare_create(self, session: Session, actor: Principal, dto: ActivityCreate) -> dict[str, Any]:
        values = dto.model_dump()
        values.update(self._normalize_contacts(dto.contact_id, dto.contact_ids))
        return values

    def _prepare_update(self, session: Session, actor: Principal, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        if "contact_ids" in changes:
            changes.update(self._normalize_contacts(changes.get("contact_id"), changes["contact_ids"]))
        elif "contact_id" in changes:
            changes.update(self._normalize_contacts(changes["contact_id"], None))
        return changes

    def _missing_references(self, session: Session, values: Mapping[str, Any]) -> dict[str, list[str]]:
        fields = super()._missing_references(session, values)
        for item in values.get("contact_ids") or []:
            if session.get(CRMContact, uuid.UUID(item)) is None:
                fields["contact_ids"] = [messages.CONTACT_NOT_FOUND]
                break
        return fields

    @staticmethod
    def _normalize_contacts(contact_id: uuid.UUID | None, contact_ids: list[uuid.UUID] | None) -> dict[str, Any]:
        # the first linked contact is the primary one
        ordered = list(dict.fromkeys(contact_ids or []))
        if ordered:
            return {"contact_id": ordered[0], "contact_ids": [str(item) for item in ordered]}
        if contact_id is not None:
            return {"contact_id": contact_id, "contact_ids": [str(contact_id)]}
        return {"contact_id": None, "contact_ids": None}


class ICPService(OwnedEntityService[ICPRead]):
    entity_type = "icp"
    not_found_message = messages.ICP_NOT_FOUND
    repository_class = ICPRepository
    create_schema = ICPCreate
    update_schema = ICPUpdate
    read_schema = ICPRead

    def create(self, session: Session, principal: Principal | None, data: Mapping[str, Any] | BaseModel) -> ICPRead:
        try:
            return super().create(session, principal, data)
        except IntegrityError as exc:
            raise ConflictError(messages.ICP_SLUG_EXISTS, field="slug") from exc

    def update(
        self,
        session: Session,
        principal: Principal | None,
        record_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> ICPRead:
        try:
            return super().update(session, principal, record_id, data)
        except IntegrityError as exc:
            raise ConflictError(messages.ICP_SLUG_EXISTS, field="slug") from exc

    def _prepare_create(self, session: Session, actor: Principal, dto: ICPCreate) -> dict[str, Any]:
        self._ensure_unique_slug(session, dto.slug)
        return dto.model_dump()

    def _prepare_update(self, session: Session, actor: Principal, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        slug = changes.get("slug")
        if slug is not None and slug != record.slug:
            self._ensure_unique_slug(session, slug, exclude_id=record.id)
        return changes

    def _ensure_unique_slug(self, session: Session, slug: str, exclude_id: uuid.UUID | None = None) -> None:
        criteria = [self.repository.model.slug == slug]
        if exclude_id is not None:
            criteria.append(self.repository.model.id != exclude_id)
        if self.repository.find_one(session, None, criteria) is not None:
            raise ConflictError(messages.ICP_SLUG_EXISTS, field="slug")


class LeadService(OwnedEntityService[LeadRead]):
    entity_type = "lead"
    not_found_message = messages.LEAD_NOT_FOUND
    repository_class = LeadRepository
    create_schema = LeadCreate
    update_schema = LeadUpdate
    read_schema = LeadRead

    def __init__(
        self,
        repository: CRMRepository | None = None,
        contact_repository: LeadContactRepository | None = None,
    ) -> None:
        super().__init__(repository)
        self.contact_repository = contact_repository or LeadContactRepository()

    def list_contacts(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> list[LeadContactRead]:
        actor = self._authenticate(principal, "list_contacts")
        with self._action(session, actor, "list_contacts") as scope:
            lead = self._load_for_write(session, actor, lead_id, "list_contacts")
            scope.entity_id = str(lead.id)
            rows = self.contact_repository.find_many(session, None, [CRMLeadContact.lead_id == lead.id])
            return [LeadContactRead.model_validate(row) for row in rows]

    def create_contact(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> LeadContactRead:
        actor = self._authenticate(principal, "create_contact")
        with self._action(session, actor, "create_contact") as scope:
            lead = self._load_for_write(session, actor, lead_id, "create_contact")
            scope.entity_id = str(lead.id)
            dto = validate_payload(LeadContactCreate, data)
            if dto.is_primary:
                self._clear_primary(session, lead.id)
            contact = self.contact_repository.create(session, {**dto.model_dump(), "lead_id": lead.id})
            self._record_change(actor, lead, "contact_added", None, snapshot(contact))
            session.commit()
            session.refresh(contact)
            return LeadContactRead.model_validate(contact)

    def update_contact(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        contact_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> LeadContactRead:
        actor = self._authenticate(principal, "update_contact")
        with self._action(session, actor, "update_contact") as scope:
            lead = self._load_for_write(session, actor, lead_id, "update_contact")
            scope.entity_id = str(lead.id)
            contact = self._load_lead_contact(session, lead, contact_id)
            dto = validate_payload(LeadContactUpdate, data)
            changes = dto.model_dump(exclude_unset=True)
            self._reject_nulls(CRMLeadContact, changes)
            if changes.get("is_primary"):
                self._clear_primary(session, lead.id, exclude_id=contact.id)

            before = snapshot(contact)
            self.contact_repository.update(session, contact, changes)
            self._record_change(actor, lead, "contact_updated", before, snapshot(contact))
            session.commit()
            session.refresh(contact)
            return LeadContactRead.model_validate(contact)

    def delete_contact(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> None:
        actor = self._authenticate(principal, "delete_contact")
        with self._action(session, actor, "delete_contact") as scope:
            lead = self._load_for_write(session, actor, lead_id, "delete_contact")
            scope.entity_id = str(lead.id)
            contact = self._load_lead_contact(session, lead, contact_id)
            if contact.converted_to_contact_id is not None:
                raise ConflictError(messages.LEAD_CONTACT_CONVERTED_DELETE)

            before = snapshot(contact)
            self.contact_repository.delete(session, contact)
            self._record_change(actor, lead, "contact_removed", before, None)
            session.commit()

    def convert_to_organization(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
    ) -> LeadConversionRead:
        """Turn a lead into an organization with contacts in one transaction."""

        actor = self._authenticate(principal, "convert")
        with self._action(session, actor, "convert") as scope:
            lead = self._load_for_write(session, actor, lead_id, "convert")
            scope.entity_id = str(lead.id)
            if lead.converted_at is not None:
                raise ConflictError(messages.LEAD_ALREADY_CONVERTED)

            lead_contacts = self.contact_repository.find_many(session, None, [CRMLeadContact.lead_id == lead.id])
            if not lead_contacts:
                raise ValidationError.for_field("lead_contacts", messages.LEAD_WITHOUT_CONTACTS)

            before = snapshot(lead)
            organization = CRMOrganization(
                name=lead.business_name,
                legal_name=lead.registered_name,
                website=lead.website,
                phone=lead.phone,
                whatsapp=lead.whatsapp,
                email=lead.email,
                country=lead.country,
                state=lead.state,
                city=lead.city,
                zip_code=lead.zip_code,
                street_address=lead.address,
                industry=lead.primary_activity,
                employee_count=lead.employees_count if lead.employees_count else None,
                annual_revenue=lead.revenue if lead.revenue else None,
                tax_id=lead.company_registration_id,
                description=lead.description,
                company_size=lead.company_size,
                linkedin=lead.linkedin,
                instagram=lead.instagram,
                source_lead_id=lead.id,
                owner_id=actor.user_id,
            )
            session.add(organization)
            session.flush()

            contacts: list[CRMContact] = []
            for lead_contact in lead_contacts:
                contact = CRMContact(
                    name=lead_contact.name,
                    email=lead_contact.email,
                    phone=lead_contact.phone,
                    whatsapp=lead_contact.whatsapp,
                    role=lead_contact.role,
                    is_primary=lead_contact.is_primary,
                    source="lead_conversion",
                    organization_id=organization.id,
                    source_lead_contact_id=lead_contact.id,
                    owner_id=actor.user_id,
                )
                session.add(contact)
                session.flush()
                lead_contact.converted_to_contact_id = contact.id
                contacts.append(contact)

            session.execute(
                update(CRMContact)
                .where(CRMContact.lead_id == lead.id)
                .values(organization_id=organization.id, lead_id=None)
                .execution_options(synchronize_session="fetch")
            )

            lead.status = "qualified"
            lead.converted_at = utcnow()
            lead.converted_organization_id = organization.id
            session.add(lead)
            session.flush()

            self._record_change(actor, lead, "converted", before, snapshot(lead))
            session.commit()
            session.refresh(lead)
            session.refresh(organization)
            relinked = session.scalars(
                select(CRMContact)
                .where(CRMContact.organization_id == organization.id)
                .order_by(CRMContact.is_primary.desc(), CRMContact.name.asc())
            ).all()
            return LeadConversionRead(
                lead=LeadRead.model_validate(lead),
                organization=OrganizationRead.model_validate(organization),
                contacts=[ContactRead.model_validate(item) for item in relinked],
            )

    def list_labels(self, session: Session, principal: Principal | None, lead_id: uuid.UUID) -> list[LabelRead]:
        actor = self._authenticate(principal, "list_labels")
        with self._action(session, actor, "list_labels") as scope:
            lead = self._load_for_write(session, actor, lead_id, "list_labels")
            scope.entity_id = str(lead.id)
            return [LabelRead.model_validate(label) for label in lead.labels]

    def add_label(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        label_id: uuid.UUID,
    ) -> list[LabelRead]:
        actor = self._authenticate(principal, "add_label")
        with self._action(session, actor, "add_label") as scope:
            lead = self._load_for_write(session, actor, lead_id, "add_label")
            scope.entity_id = str(lead.id)
            label = session.get(CRMLabel, label_id)
            if label is None:
                raise NotFoundError(messages.LABEL_NOT_FOUND, resource="label")

            before = self._label_ids(lead)
            if label not in lead.labels:
                lead.labels.append(label)
            return self._save_labels(session, actor, lead, "label_added", before)

    def remove_label(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        label_id: uuid.UUID,
    ) -> list[LabelRead]:
        actor = self._authenticate(principal, "remove_label")
        with self._action(session, actor, "remove_label") as scope:
            lead = self._load_for_write(session, actor, lead_id, "remove_label")
            scope.entity_id = str(lead.id)
            before = self._label_ids(lead)
            lead.labels = [label for label in lead.labels if label.id != label_id]
            return self._save_labels(session, actor, lead, "label_removed", before)

    def set_labels(
        self,
        session: Session,
        principal: Principal | None,
        lead_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> list[LabelRead]:
        """Replace the lead's labels. Unknown label ids are dropped."""

        actor = self._authenticate(principal, "set_labels")
        with self._action(session, actor, "set_labels") as scope:
            lead = self._load_for_write(session, actor, lead_id, "set_labels")
            scope.entity_id = str(lead.id)
            dto = validate_payload(LeadLabelsUpdate, data)
            wanted = list(dict.fromkeys(dto.label_ids))
            labels = session.scalars(select(CRMLabel).where(CRMLabel.id.in_(wanted))).all() if wanted else []

            before = self._label_ids(lead)
            lead.labels = list(labels)
            return self._save_labels(session, actor, lead, "labels_set", before)

    def _save_labels(
        self,
        session: Session,
        actor: Principal,
        lead: CRMLead,
        action: str,
        before: list[str],
    ) -> list[LabelRead]:
        session.flush()
        self._record_change(actor, lead, action, {"label_ids": before}, {"label_ids": self._label_ids(lead)})
        session.commit()
        session.refresh(lead, ["labels"])
        return [LabelRead.model_validate(label) for label in lead.labels]

    @staticmethod
    def _label_ids(lead: CRMLead) -> list[str]:
        return sorted(str(label.id) for label in lead.labels)

    def _before_delete(self, session: Session, actor: Principal, record: CRMLead) -> None:
        if record.converted_at is not None:
            raise ConflictError(messages.LEAD_CONVERTED_DELETE)

    def _load_lead_contact(self, session: Session, lead: CRMLead, contact_id: uuid.UUID) -> CRMLeadContact:
        contact = self.contact_repository.find_by_id(session, contact_id)
        if contact is None or contact.lead_id != lead.id:
            raise NotFoundError(messages.LEAD_CONTACT_NOT_FOUND, resource="lead_contact")
        return contact

    def _clear_primary(self, session: Session, lead_id: uuid.UUID, exclude_id: uuid.UUID | None = None) -> None:
        stmt = update(CRMLeadContact).where(CRMLeadContact.lead_id == lead_id, CRMLeadContact.is_primary.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(CRMLeadContact.id != exclude_id)
        session.execute(stmt.values(is_primary=False).execution_options(synchronize_session="fetch"))


class ReferenceCatalogService(_ActionMixin, Generic[ReadT]):
    """CRUD over non-owned reference data. Any authenticated principal may read and write."""

    not_found_message: ClassVar[str] = ""
    repository_class: ClassVar[type[BaseRepository[Any]]]
    create_schema: ClassVar[type[BaseModel]]
    update_schema: ClassVar[type[BaseModel]]
    read_schema: ClassVar[type[BaseModel]]

    def __init__(self, repository: BaseRepository[Any] | None = None) -> None:
        self.repository = repository or self.repository_class()

    def list(
        self,
        session: Session,
        principal: Principal | None,
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ReadT]:
        actor = self._authenticate(principal, "list")
        with self._action(session, actor, "list"):
            page_size, page_offset = resolve_page(limit, offset)
            rows = self.repository.find_many(
                session,
                None,
                self._criteria(filters or {}),
                limit=page_size,
                offset=page_offset,
            )
            return [self.read_schema.model_validate(row) for row in rows]  # type: ignore[misc]

    def get(self, session: Session, principal: Principal | None, record_id: uuid.UUID) -> ReadT:
        actor = self._authenticate(principal, "get")
        with self._action(session, actor, "get") as scope:
            scope.entity_id = str(record_id)
            return self.read_schema.model_validate(self._load(session, record_id))  # type: ignore[return-value]

    def create(self, session: Session, principal: Principal | None, data: Mapping[str, Any] | BaseModel) -> ReadT:
        actor = self._authenticate(principal, "create")
        with self._action(session, actor, "create") as scope:
            dto = validate_payload(self.create_schema, data)
            values = self._prepare_create(session, dto)
            record = self.repository.create(session, values)
            scope.entity_id = str(record.id)
            self._record_change(actor, record, "create", None, snapshot(record))
            session.commit()
            session.refresh(record)
            return self.read_schema.model_validate(record)  # type: ignore[return-value]

    def update(
        self,
        session: Session,
        principal: Principal | None,
        record_id: uuid.UUID,
        data: Mapping[str, Any] | BaseModel,
    ) -> ReadT:
        actor = self._authenticate(principal, "update")
        with self._action(session, actor, "update") as scope:
            record = self._load(session, record_id)
            scope.entity_id = str(record.id)
            dto = validate_payload(self.update_schema, data)
            changes = self._prepare_update(session, record, dto.model_dump(exclude_unset=True))
            self._reject_nulls(self.repository.model, changes)

            before = snapshot(record)
            self.repository.update(session, record, changes)
            self._record_change(actor, record, "update", before, snapshot(record))
            session.commit()
            session.refresh(record)
            return self.read_schema.model_validate(record)  # type: ignore[return-value]

    def delete(self, session: Session, principal: Principal | None, record_id: uuid.UUID) -> None:
        actor = self._authenticate(principal, "delete")
        with self._action(session, actor, "delete") as scope:
            record = self._load(session, record_id)
            scope.entity_id = str(record.id)
            self._before_delete(session, record)
            before = snapshot(record)
            self.repository.delete(session, record)
            self._record_change(actor, record, "delete", before, None)
            session.commit()

    def _load(self, session: Session, record_id: uuid.UUID) -> Any:
        record = self.repository.find_by_id(session, record_id)
        if record is None:
            raise NotFoundError(self.not_found_message, resource=self.entity_type)
        return record

    def _criteria(self, filters: Mapping[str, Any]) -> list[Any]:
        return []

    def _prepare_create(self, session: Session, dto: Any) -> dict[str, Any]:
        return dto.model_dump()

    def _prepare_update(self, session: Session, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        return changes

    def _before_delete(self, session: Session, record: Any) -> None:
        return None


class PipelineCatalogService(ReferenceCatalogService[PipelineRead]):
    entity_type = "pipeline"
    not_found_message = messages.PIPELINE_NOT_FOUND
    repository_class = PipelineRepository
    create_schema = PipelineCreate
    update_schema = PipelineUpdate
    read_schema = PipelineRead

    def _prepare_create(self, session: Session, dto: PipelineCreate) -> dict[str, Any]:
        if dto.is_default:
            self._unset_other_defaults(session)
        return dto.model_dump()

    def _prepare_update(self, session: Session, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        if changes.get("is_default"):
            self._unset_other_defaults(session, exclude_id=record.id)
        return changes

    def _before_delete(self, session: Session, record: Any) -> None:
        deals = session.scalar(
            select(func.count(CRMDeal.id))
            .join(CRMStage, CRMStage.id == CRMDeal.stage_id)
            .where(CRMStage.pipeline_id == record.id)
        )
        if deals:
            raise ConflictError("Pipeline possui negócios vinculados")

    def _unset_other_defaults(self, session: Session, exclude_id: uuid.UUID | None = None) -> None:
        model = self.repository.model
        stmt = update(model).where(model.is_default.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        session.execute(stmt.values(is_default=False).execution_options(synchronize_session="fetch"))


class StageCatalogService(ReferenceCatalogService[StageRead]):
    entity_type = "stage"
    not_found_message = messages.STAGE_NOT_FOUND
    repository_class = StageRepository
    create_schema = StageCreate
    update_schema = StageUpdate
    read_schema = StageRead

    def _criteria(self, filters: Mapping[str, Any]) -> list[Any]:
        if filters.get("pipeline_id"):
            return [CRMStage.pipeline_id == filters["pipeline_id"]]
        return []

    def _prepare_create(self, session: Session, dto: StageCreate) -> dict[str, Any]:
        if PipelineRepository().find_by_id(session, dto.pipeline_id) is None:
            raise ValidationError.for_field("pipeline_id", messages.PIPELINE_NOT_FOUND)
        return dto.model_dump()

    def _before_delete(self, session: Session, record: Any) -> None:
        deals = session.scalar(select(func.count(CRMDeal.id)).where(CRMDeal.stage_id == record.id))
        if deals:
            raise ConflictError("Estágio possui negócios vinculados")


class ProductCatalogService(ReferenceCatalogService[ProductRead]):
    entity_type = "product"
    not_found_message = messages.PRODUCT_NOT_FOUND
    repository_class = ProductRepository
    create_schema = ProductCreate
    update_schema = ProductUpdate
    read_schema = ProductRead

    def _criteria(self, filters: Mapping[str, Any]) -> list[Any]:
        criteria: list[Any] = []
        model = self.repository.model
        if filters.get("business_line_id"):
            criteria.append(model.business_line_id == filters["business_line_id"])
        if filters.get("is_active") is not None:
            criteria.append(model.is_active.is_(bool(filters["is_active"])))
        return criteria

    def _prepare_create(self, session: Session, dto: ProductCreate) -> dict[str, Any]:
        self._check_business_line(session, dto.business_line_id)
        values = dto.model_dump()
        values["currency"] = values["currency"].upper()
        return values

    def _prepare_update(self, session: Session, record: Any, changes: dict[str, Any]) -> dict[str, Any]:
        if "business_line_id" in changes:
            self._check_business_line(session, changes["business_line_id"])
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()
        return changes

    def _check_business_line(self, session: Session, business_line_id: uuid.UUID | None) -> None:
        if business_line_id is None:
            return
        if BusinessLineRepository().find_by_id(session, business_line_id) is None:
            raise ValidationError.for_field("business_line_id", messages.BUSINESS_LINE_NOT_FOUND)


class BusinessLineCatalogService(ReferenceCatalogService[BusinessLineRead]):
    entity_type = "business_line"
    not_found_message = messages.BUSINESS_LINE_NOT_FOUND
    repository_class = BusinessLineRepository
    create_schema = BusinessLineCreate
    update_schema = BusinessLineUpdate
    read_schema = BusinessLineRead


class LabelCatalogService(ReferenceCatalogService[LabelRead]):
    entity_type = "label"
    not_found_message = messages.LABEL_NOT_FOUND
    repository_class = LabelRepository
    create_schema = LabelCreate
    update_schema = LabelUpdate
    read_schema = LabelRead


deal_service = DealService()
contact_service = ContactService()
lead_service = LeadService()
organization_service = OrganizationService()
partner_service = PartnerService()
activity_service = ActivityService()
icp_service = ICPService()

pipeline_catalog_service = PipelineCatalogService()
stage_catalog_service = StageCatalogService()
product_catalog_service = ProductCatalogService()
business_line_catalog_service = BusinessLineCatalogService()
label_catalog_service = LabelCatalogService()
