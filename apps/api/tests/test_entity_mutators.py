from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from app import audit, events
from app.crm import messages
from app.crm.models import CRMPipeline, CRMStage
from app.crm.service import (
    activity_service,
    contact_service,
    deal_service,
    organization_service,
    partner_service,
)
from app.platform.security import NotFoundError, Principal, Role, UnauthorizedError, ValidationError


ADMIN = Principal(user_id="admin-1", role=Role.ADMIN)
SDR = Principal(user_id="sdr-1", role=Role.SDR)
CLOSER = Principal(user_id="closer-1", role=Role.CLOSER)


@pytest.fixture()
def next_stage(db_session: Session, stage: CRMStage) -> CRMStage:
    row = CRMStage(pipeline_id=stage.pipeline_id, name="Proposta", order=1, probability=50)
    db_session.add(row)
    db_session.commit()
    return row


def _mutators(target_id: uuid.UUID, next_stage_id: uuid.UUID) -> dict[str, Callable[[Session, Principal | None], Any]]:
    return {
        "deal": lambda session, principal: deal_service.update_stage(
            session, principal, target_id, {"stage_id": str(next_stage_id)}
        ),
        "activity.toggle": lambda session, principal: activity_service.toggle_completed(session, principal, target_id),
        "activity.due_date": lambda session, principal: activity_service.update_due_date(
            session, principal, target_id, {"due_date": "2026-11-01T14:00:00Z"}
        ),
        "partner": lambda session, principal: partner_service.update_last_contact(session, principal, target_id),
    }


MUTATOR_CASES = [
    ("deal", "deal"),
    ("activity", "activity.toggle"),
    ("activity", "activity.due_date"),
    ("partner", "partner"),
]


@pytest.mark.parametrize(("entity_type", "mutator"), MUTATOR_CASES)
def test_mutators_hide_foreign_records_behind_not_found(
    db_session: Session,
    make_record: Callable[..., Any],
    next_stage: CRMStage,
    entity_type: str,
    mutator: str,
) -> None:
    foreign = make_record(entity_type, "closer-1")
    before = {column: getattr(foreign, column) for column in ("updated_at",)}

    with pytest.raises(NotFoundError):
        _mutators(foreign.id, next_stage.id)[mutator](db_session, SDR)
    with pytest.raises(NotFoundError):
        _mutators(uuid.uuid4(), next_stage.id)[mutator](db_session, SDR)

    db_session.refresh(foreign)
    assert foreign.updated_at == before["updated_at"]
    assert audit.audit_entries == []


@pytest.mark.parametrize(("entity_type", "mutator"), MUTATOR_CASES)
def test_mutators_require_a_principal(
    db_session: Session,
    make_record: Callable[..., Any],
    next_stage: CRMStage,
    entity_type: str,
    mutator: str,
) -> None:
    record = make_record(entity_type, "sdr-1")

    with pytest.raises(UnauthorizedError):
        _mutators(record.id, next_stage.id)[mutator](db_session, None)


@pytest.mark.parametrize(("entity_type", "mutator"), MUTATOR_CASES)
def test_admin_may_run_mutators_on_any_record(
    db_session: Session,
    make_record: Callable[..., Any],
    next_stage: CRMStage,
    entity_type: str,
    mutator: str,
) -> None:
    foreign = make_record(entity_type, "closer-1")

    result = _mutators(foreign.id, next_stage.id)[mutator](db_session, ADMIN)

    assert result.id == foreign.id
    assert result.owner_id == "closer-1"
    assert len(audit.entries_for(f"crm.{entity_type}", str(foreign.id))) == 1


def test_update_stage_moves_deal_and_publishes_stage_change(
    db_session: Session,
    make_record: Callable[..., Any],
    next_stage: CRMStage,
) -> None:
    deal = make_record("deal", "sdr-1")

    moved = deal_service.update_stage(db_session, SDR, deal.id, {"stage_id": str(next_stage.id)})

    assert moved.stage_id == next_stage.id
    entry = audit.entries_for("crm.deal", str(deal.id))[-1]
    assert entry["action"] == "stage_changed"
    assert entry["before"]["stage_id"] != entry["after"]["stage_id"]
    assert events.published_events[-1]["event_type"] == "crm.deal.stage_changed"


def test_update_stage_rejects_unknown_stage(db_session: Session, make_record: Callable[..., Any]) -> None:
    deal = make_record("deal", "sdr-1")

    with pytest.raises(ValidationError) as exc_info:
        deal_service.update_stage(db_session, SDR, deal.id, {"stage_id": str(uuid.uuid4())})

    assert exc_info.value.fields == {"stage_id": ["Estágio não encontrado"]}


def test_deal_create_defaults_currency_and_checks_stage(db_session: Session, stage: CRMStage) -> None:
    created = deal_service.create(db_session, SDR, {"title": "Licenças", "value": "200", "stage_id": str(stage.id)})
    assert created.currency == "BRL"
    assert created.status == "open"

    with pytest.raises(ValidationError) as exc_info:
        deal_service.create(db_session, SDR, {"title": "Licenças", "stage_id": str(uuid.uuid4())})
    assert "stage_id" in exc_info.value.fields


def test_deal_filters_by_status_and_stage(
    db_session: Session,
    make_record: Callable[..., Any],
    next_stage: CRMStage,
) -> None:
    make_record("deal", "sdr-1", title="Aberto")
    make_record("deal", "sdr-1", title="Ganho", status="won", stage_id=next_stage.id)

    won = deal_service.list(db_session, SDR, filters={"status": "won"})
    at_stage = deal_service.list(db_session, SDR, filters={"stage_id": next_stage.id})
    searched = deal_service.list(db_session, SDR, filters={"search": "aber"})

    assert [row.title for row in won] == ["Ganho"]
    assert [row.title for row in at_stage] == ["Ganho"]
    assert [row.title for row in searched] == ["Aberto"]


def test_toggle_completed_flips_state_each_call(db_session: Session, make_record: Callable[..., Any]) -> None:
    activity = make_record("activity", "sdr-1")

    done = activity_service.toggle_completed(db_session, SDR, activity.id)
    reopened = activity_service.toggle_completed(db_session, SDR, activity.id)

    assert done.completed is True
    assert reopened.completed is False
    actions = [entry["action"] for entry in audit.entries_for("crm.activity", str(activity.id))]
    assert actions == ["completed", "reopened"]


def test_update_due_date_sets_and_clears(db_session: Session, make_record: Callable[..., Any]) -> None:
    activity = make_record("activity", "sdr-1")

    scheduled = activity_service.update_due_date(db_session, SDR, activity.id, {"due_date": "2026-11-01T14:00:00Z"})
    cleared = activity_service.update_due_date(db_session, SDR, activity.id, {"due_date": None})

    assert scheduled.due_date is not None
    assert scheduled.due_date.replace(tzinfo=None) == datetime(2026, 11, 1, 14, 0)
    assert cleared.due_date is None


def test_activity_contact_ids_keep_first_as_primary(db_session: Session, make_record: Callable[..., Any]) -> None:
    first = make_record("contact", "sdr-1", name="Primeira")
    second = make_record("contact", "sdr-1", name="Segunda")

    created = activity_service.create(
        db_session,
        SDR,
        {
            "type": "meeting",
            "subject": "Kickoff",
            "contact_ids": [str(first.id), str(second.id), str(first.id)],
        },
    )

    assert created.contact_id == first.id
    assert created.contact_ids == [str(first.id), str(second.id)]

    updated = activity_service.update(db_session, SDR, created.id, {"contact_id": str(second.id)})
    assert updated.contact_id == second.id
    assert updated.contact_ids == [str(second.id)]


def test_activity_rejects_unknown_type(db_session: Session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        activity_service.create(db_session, SDR, {"type": "fax", "subject": "Envio"})

    assert exc_info.value.fields == {"type": ["Tipo de atividade inválido"]}


def test_activities_are_ordered_open_first_then_by_due_date(
    db_session: Session,
    make_record: Callable[..., Any],
) -> None:
    make_record("activity", "sdr-1", subject="Concluída", completed=True)
    make_record("activity", "sdr-1", subject="Depois", due_date=datetime(2026, 12, 1, tzinfo=timezone.utc))
    make_record("activity", "sdr-1", subject="Antes", due_date=datetime(2026, 11, 1, tzinfo=timezone.utc))

    rows = activity_service.list(db_session, SDR)

    assert [row.subject for row in rows][-1] == "Concluída"
    subjects = [row.subject for row in rows]
    assert subjects.index("Antes") < subjects.index("Depois")


def test_partner_create_and_last_contact_stamp_now(db_session: Session) -> None:
    created = partner_service.create(db_session, SDR, {"name": "Integradora", "partner_type": "integrator"})
    assert created.last_contact_date is not None

    touched = partner_service.update_last_contact(db_session, SDR, created.id)

    assert touched.last_contact_date >= created.last_contact_date


def test_partner_requires_partner_type(db_session: Session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        partner_service.create(db_session, SDR, {"name": "Integradora"})

    assert exc_info.value.fields == {"partner_type": ["Tipo de parceria é obrigatório"]}


def test_contact_company_link_resolves_exactly_one_reference(
    db_session: Session,
    make_record: Callable[..., Any],
) -> None:
    organization = make_record("organization", "sdr-1")
    partner = make_record("partner", "sdr-1")

    contact = contact_service.create(
        db_session,
        SDR,
        {"name": "João", "company_type": "organization", "company_id": str(organization.id)},
    )
    assert contact.organization_id == organization.id
    assert contact.lead_id is None
    assert contact.partner_id is None

    moved = contact_service.update(
        db_session,
        SDR,
        contact.id,
        {"company_type": "partner", "company_id": str(partner.id)},
    )
    assert moved.organization_id is None
    assert moved.partner_id == partner.id

    with pytest.raises(ValidationError) as exc_info:
        contact_service.create(
            db_session,
            SDR,
            {"name": "Ana", "company_type": "lead", "company_id": str(uuid.uuid4())},
        )
    assert exc_info.value.fields == {"company_id": ["Empresa vinculada não encontrada"]}


def test_contact_email_is_validated(db_session: Session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        contact_service.create(db_session, SDR, {"name": "Ana", "email": "nao-e-email"})

    assert exc_info.value.fields == {"email": ["Email inválido"]}


def test_deal_create_normalizes_currency_code(db_session: Session) -> None:
    pipeline = CRMPipeline(name="Parcerias")
    db_session.add(pipeline)
    db_session.commit()

    created = deal_service.create(
        db_session,
        CLOSER,
        {"title": "Revenda", "stage_id": str(_stage_in(db_session, pipeline).id), "currency": "usd"},
    )

    assert created.currency == "USD"
    assert created.owner_id == "closer-1"


def _stage_in(session: Session, pipeline: CRMPipeline) -> CRMStage:
    row = CRMStage(pipeline_id=pipeline.id, name="Contato", order=0, probability=5)
    session.add(row)
    session.commit()
    return row


@pytest.fixture()
def enforced_foreign_keys(db_session: Session) -> Generator[Session, None, None]:
    db_session.execute(text("PRAGMA foreign_keys=ON"))
    yield db_session
    db_session.rollback()
    db_session.execute(text("PRAGMA foreign_keys=OFF"))


@pytest.mark.parametrize(
    ("field_name", "message"),
    [
        ("organization_id", messages.ORGANIZATION_NOT_FOUND),
        ("contact_id", messages.CONTACT_NOT_FOUND),
    ],
)
def test_deal_create_rejects_unknown_references(
    enforced_foreign_keys: Session,
    stage: CRMStage,
    field_name: str,
    message: str,
) -> None:
    payload = {"title": "Licenças", "stage_id": str(stage.id), field_name: str(uuid.uuid4())}

    with pytest.raises(ValidationError) as exc_info:
        deal_service.create(enforced_foreign_keys, SDR, payload)

    assert exc_info.value.fields == {field_name: [message]}
    assert deal_service.list(enforced_foreign_keys, SDR) == []


def test_deal_update_rejects_unknown_organization(db_session: Session, make_record: Callable[..., Any]) -> None:
    deal = make_record("deal", "sdr-1")

    with pytest.raises(ValidationError) as exc_info:
        deal_service.update(db_session, SDR, deal.id, {"organization_id": str(uuid.uuid4())})

    assert exc_info.value.fields == {"organization_id": [messages.ORGANIZATION_NOT_FOUND]}
    organization = make_record("organization", "sdr-1")
    updated = deal_service.update(db_session, SDR, deal.id, {"organization_id": str(organization.id)})
    assert updated.organization_id == organization.id


def test_activity_rejects_unknown_links(enforced_foreign_keys: Session, make_record: Callable[..., Any]) -> None:
    contact = make_record("contact", "sdr-1")
    payload = {
        "type": "call",
        "subject": "Retorno",
        "deal_id": str(uuid.uuid4()),
        "contact_ids": [str(contact.id), str(uuid.uuid4())],
    }

    with pytest.raises(ValidationError) as exc_info:
        activity_service.create(enforced_foreign_keys, SDR, payload)

    assert exc_info.value.fields == {
        "deal_id": [messages.DEAL_NOT_FOUND],
        "contact_ids": [messages.CONTACT_NOT_FOUND],
    }


def test_activity_accepts_existing_links(db_session: Session, make_record: Callable[..., Any]) -> None:
    contact = make_record("contact", "sdr-1")
    deal = make_record("deal", "sdr-1")

    created = activity_service.create(
        db_session,
        SDR,
        {"type": "call", "subject": "Retorno", "deal_id": str(deal.id), "contact_ids": [str(contact.id)]},
    )

    assert created.deal_id == deal.id
    assert created.contact_ids == [str(contact.id)]


def test_organization_rejects_unknown_label(db_session: Session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        organization_service.create(db_session, SDR, {"name": "Acme Ltda", "label_id": str(uuid.uuid4())})

    assert exc_info.value.fields == {"label_id": [messages.LABEL_NOT_FOUND]}


def test_deal_search_matches_contact_and_organization_names(
    db_session: Session, make_record: Callable[..., Any]
) -> None:
    contact = make_record("contact", "sdr-1", name="Joana Prado")
    organization = make_record("organization", "sdr-1", name="Metalurgica Norte")
    make_record("deal", "sdr-1", title="Renovação", contact_id=contact.id)
    make_record("deal", "sdr-1", title="Expansão", organization_id=organization.id)
    make_record("deal", "sdr-1", title="Outro negócio")

    by_contact = deal_service.list(db_session, SDR, filters={"search": "joana"})
    by_organization = deal_service.list(db_session, SDR, filters={"search": "NORTE"})

    assert [row.title for row in by_contact] == ["Renovação"]
    assert [row.title for row in by_organization] == ["Expansão"]
