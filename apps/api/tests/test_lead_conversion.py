from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.models import CRMContact, CRMLead, CRMLeadContact, CRMOrganization
from app.crm.service import lead_service
from app.platform.security import ConflictError, NotFoundError, Principal, Role, UnauthorizedError, ValidationError


ADMIN = Principal(user_id="admin-1", role=Role.ADMIN)
SDR = Principal(user_id="sdr-1", role=Role.SDR)
CLOSER = Principal(user_id="closer-1", role=Role.CLOSER)


@pytest.fixture()
def lead(make_record: Callable[..., Any]) -> CRMLead:
    return make_record(
        "lead",
        "sdr-1",
        business_name="Padaria Central",
        registered_name="Padaria Central Ltda",
        company_registration_id="12.345.678/0001-90",
        website="https://padaria.example.com",
        city="Curitiba",
        employees_count=12,
    )


def test_lead_contacts_keep_a_single_primary(db_session: Session, lead: CRMLead) -> None:
    first = lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos", "is_primary": True})
    second = lead_service.create_contact(db_session, SDR, lead.id, {"name": "Denise", "is_primary": True})

    contacts = lead_service.list_contacts(db_session, SDR, lead.id)

    assert [contact.id for contact in contacts if contact.is_primary] == [second.id]
    assert {contact.id for contact in contacts} == {first.id, second.id}

    promoted = lead_service.update_contact(db_session, SDR, lead.id, first.id, {"is_primary": True})
    assert promoted.is_primary is True
    primaries = [contact.id for contact in lead_service.list_contacts(db_session, SDR, lead.id) if contact.is_primary]
    assert primaries == [first.id]


def test_lead_contacts_are_guarded_by_the_parent_lead_owner(db_session: Session, lead: CRMLead) -> None:
    contact = lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})

    with pytest.raises(NotFoundError) as list_error:
        lead_service.list_contacts(db_session, CLOSER, lead.id)
    with pytest.raises(NotFoundError):
        lead_service.create_contact(db_session, CLOSER, lead.id, {"name": "Intruso"})
    with pytest.raises(NotFoundError):
        lead_service.update_contact(db_session, CLOSER, lead.id, contact.id, {"name": "Intruso"})
    with pytest.raises(NotFoundError):
        lead_service.delete_contact(db_session, CLOSER, lead.id, contact.id)
    with pytest.raises(UnauthorizedError):
        lead_service.list_contacts(db_session, None, lead.id)

    assert list_error.value.message == "Lead não encontrado"
    assert len(lead_service.list_contacts(db_session, ADMIN, lead.id)) == 1


def test_lead_contact_must_belong_to_the_lead(
    db_session: Session,
    lead: CRMLead,
    make_record: Callable[..., Any],
) -> None:
    other_lead = make_record("lead", "sdr-1", business_name="Mercado Bom")
    contact = lead_service.create_contact(db_session, SDR, other_lead.id, {"name": "Eva"})

    with pytest.raises(NotFoundError) as exc_info:
        lead_service.update_contact(db_session, SDR, lead.id, contact.id, {"name": "Eva Maria"})

    assert exc_info.value.message == "Contato não encontrado"


def test_convert_creates_organization_contacts_and_qualifies_lead(
    db_session: Session,
    lead: CRMLead,
    make_record: Callable[..., Any],
) -> None:
    lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos", "email": "carlos@padaria.example.com", "is_primary": True})
    lead_service.create_contact(db_session, SDR, lead.id, {"name": "Denise", "role": "Financeiro"})
    linked = make_record("contact", "sdr-1", name="Fábio", lead_id=lead.id)

    result = lead_service.convert_to_organization(db_session, SDR, lead.id)

    assert result.lead.status == "qualified"
    assert result.lead.converted_at is not None
    assert result.lead.converted_organization_id == result.organization.id
    assert result.organization.owner_id == "sdr-1"
    assert result.organization.name == "Padaria Central"
    assert result.organization.legal_name == "Padaria Central Ltda"
    assert result.organization.tax_id == "12.345.678/0001-90"
    assert result.organization.employee_count == 12
    assert result.organization.source_lead_id == lead.id

    names = [contact.name for contact in result.contacts]
    assert names[0] == "Carlos"
    assert set(names) == {"Carlos", "Denise", "Fábio"}
    assert all(contact.organization_id == result.organization.id for contact in result.contacts)
    assert all(contact.owner_id == "sdr-1" for contact in result.contacts)

    db_session.refresh(linked)
    assert linked.lead_id is None
    assert linked.organization_id == result.organization.id

    lead_contacts = db_session.scalars(select(CRMLeadContact).where(CRMLeadContact.lead_id == lead.id)).all()
    assert all(row.converted_to_contact_id is not None for row in lead_contacts)

    assert audit.entries_for("crm.lead", str(lead.id))[-1]["action"] == "converted"
    assert events.published_events[-1]["event_type"] == "crm.lead.converted"


def test_convert_by_admin_assigns_organization_to_admin(db_session: Session, lead: CRMLead) -> None:
    lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})

    result = lead_service.convert_to_organization(db_session, ADMIN, lead.id)

    assert result.organization.owner_id == "admin-1"
    assert result.lead.owner_id == "sdr-1"


def test_convert_rejects_lead_without_contacts(db_session: Session, lead: CRMLead) -> None:
    with pytest.raises(ValidationError) as exc_info:
        lead_service.convert_to_organization(db_session, SDR, lead.id)

    assert "lead_contacts" in exc_info.value.fields
    assert db_session.scalars(select(CRMOrganization)).all() == []


def test_convert_twice_is_a_conflict(db_session: Session, lead: CRMLead) -> None:
    lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})
    lead_service.convert_to_organization(db_session, SDR, lead.id)

    with pytest.raises(ConflictError) as exc_info:
        lead_service.convert_to_organization(db_session, SDR, lead.id)

    assert exc_info.value.message == "Lead já foi convertido"
    assert len(db_session.scalars(select(CRMOrganization)).all()) == 1


def test_convert_of_foreign_lead_is_not_found(db_session: Session, lead: CRMLead) -> None:
    lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})

    with pytest.raises(NotFoundError):
        lead_service.convert_to_organization(db_session, CLOSER, lead.id)
    with pytest.raises(NotFoundError):
        lead_service.convert_to_organization(db_session, SDR, uuid.uuid4())

    db_session.refresh(lead)
    assert lead.converted_at is None
    assert db_session.scalars(select(CRMContact)).all() == []


def test_converted_lead_and_its_contacts_cannot_be_deleted(db_session: Session, lead: CRMLead) -> None:
    contact = lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})
    lead_service.convert_to_organization(db_session, SDR, lead.id)

    with pytest.raises(ConflictError) as lead_error:
        lead_service.delete(db_session, SDR, lead.id)
    with pytest.raises(ConflictError) as contact_error:
        lead_service.delete_contact(db_session, SDR, lead.id, contact.id)

    assert lead_error.value.message == "Não é possível excluir um lead já convertido"
    assert contact_error.value.message == "Não é possível excluir um contato já convertido"
    assert lead_service.get_by_id(db_session, SDR, lead.id) is not None


def test_unconverted_lead_contact_can_be_deleted(db_session: Session, lead: CRMLead) -> None:
    contact = lead_service.create_contact(db_session, SDR, lead.id, {"name": "Carlos"})

    lead_service.delete_contact(db_session, SDR, lead.id, contact.id)

    assert lead_service.list_contacts(db_session, SDR, lead.id) == []
    actions = [entry["action"] for entry in audit.entries_for("crm.lead", str(lead.id))]
    assert actions == ["contact_added", "contact_removed"]


def test_lead_filters_by_quality_and_search(db_session: Session, make_record: Callable[..., Any]) -> None:
    make_record("lead", "sdr-1", business_name="Oficina Rápida", quality="hot")
    make_record("lead", "sdr-1", business_name="Livraria Azul", quality="cold", email="contato@livraria.example.com")

    hot = lead_service.list(db_session, SDR, filters={"quality": "hot"})
    searched = lead_service.list(db_session, SDR, filters={"search": "livraria"})

    assert [row.business_name for row in hot] == ["Oficina Rápida"]
    assert [row.business_name for row in searched] == ["Livraria Azul"]
