from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.orm import Session

from app.crm.service import icp_service
from app.platform.security import ConflictError, Principal, Role, ValidationError


SDR = Principal(user_id="sdr-1", role=Role.SDR)
CLOSER = Principal(user_id="closer-1", role=Role.CLOSER)


def test_icp_slug_is_unique_across_owners(db_session: Session) -> None:
    icp_service.create(db_session, SDR, {"name": "Varejo", "slug": "varejo", "content": "Lojas físicas"})

    with pytest.raises(ConflictError) as exc_info:
        icp_service.create(db_session, CLOSER, {"name": "Varejo 2", "slug": "varejo", "content": "Outro"})

    assert exc_info.value.message == "Slug já existe"
    assert exc_info.value.field == "slug"


def test_icp_update_keeps_own_slug_but_rejects_taken_one(db_session: Session, make_record: Callable[..., Any]) -> None:
    first = icp_service.create(db_session, SDR, {"name": "Varejo", "slug": "varejo", "content": "Lojas"})
    second = icp_service.create(db_session, SDR, {"name": "Indústria", "slug": "industria", "content": "Fábricas"})

    same = icp_service.update(db_session, SDR, first.id, {"slug": "varejo", "status": "active"})
    assert same.status == "active"

    with pytest.raises(ConflictError):
        icp_service.update(db_session, SDR, second.id, {"slug": "varejo"})


@pytest.mark.parametrize(
    ("payload", "field_name", "message"),
    [
        ({"name": "V", "slug": "varejo", "content": "x"}, "name", "Nome deve ter pelo menos 2 caracteres"),
        (
            {"name": "Varejo", "slug": "Varejo Sul", "content": "x"},
            "slug",
            "Slug deve conter apenas letras minúsculas, números e hífens",
        ),
        ({"name": "Varejo", "slug": "varejo", "content": "   "}, "content", "Conteúdo é obrigatório"),
    ],
)
def test_icp_payload_rules(db_session: Session, payload: dict[str, Any], field_name: str, message: str) -> None:
    with pytest.raises(ValidationError) as exc_info:
        icp_service.create(db_session, SDR, payload)

    assert exc_info.value.fields[field_name] == [message]


def test_icp_status_filter(db_session: Session, make_record: Callable[..., Any]) -> None:
    make_record("icp", "sdr-1", name="Rascunho")
    make_record("icp", "sdr-1", name="Publicado", status="active")

    rows = icp_service.list(db_session, SDR, filters={"status": "active"})

    assert [row.name for row in rows] == ["Publicado"]
