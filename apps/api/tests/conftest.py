from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import get_current_principal
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import (
    CRMICP,
    CRMActivity,
    CRMContact,
    CRMDeal,
    CRMLead,
    CRMOrganization,
    CRMPartner,
    CRMPipeline,
    CRMStage,
)
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import Principal, Role


ADMIN = Principal(user_id="admin-1", role=Role.ADMIN)
SDR = Principal(user_id="sdr-1", role=Role.SDR)
CLOSER = Principal(user_id="closer-1", role=Role.CLOSER)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@dataclass
class ActorSwitch:
    principal: Principal | None = SDR

    def use(self, principal: Principal | None) -> None:
        self.principal = principal


@pytest.fixture()
def actor() -> ActorSwitch:
    return ActorSwitch()


@pytest.fixture()
def client(db_session: Session, actor: ActorSwitch) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_principal(request: Request) -> Principal | None:
        if actor.principal is None:
            return None
        return Principal(
            user_id=actor.principal.user_id,
            role=actor.principal.role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_principal] = override_get_current_principal
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def stage(db_session: Session) -> CRMStage:
    pipeline = CRMPipeline(name="Vendas", is_default=True)
    db_session.add(pipeline)
    db_session.flush()
    row = CRMStage(pipeline_id=pipeline.id, name="Prospecção", order=0, probability=10)
    db_session.add(row)
    db_session.commit()
    return row


def _deal_values(stage_id: uuid.UUID) -> dict[str, Any]:
    return {"title": "Contrato anual", "value": Decimal("1500.00"), "currency": "BRL", "stage_id": stage_id}


@pytest.fixture()
def make_record(db_session: Session, stage: CRMStage) -> Callable[..., Any]:
    """Insert an owned row directly, bypassing the services."""

    builders: dict[str, Callable[[], tuple[type[Any], dict[str, Any]]]] = {
        "deal": lambda: (CRMDeal, _deal_values(stage.id)),
        "contact": lambda: (CRMContact, {"name": "Maria Souza", "email": "maria@example.com"}),
        "lead": lambda: (CRMLead, {"business_name": "Padaria Central"}),
        "organization": lambda: (CRMOrganization, {"name": "Acme Ltda"}),
        "partner": lambda: (CRMPartner, {"name": "Parceiro Sul", "partner_type": "reseller"}),
        "activity": lambda: (CRMActivity, {"type": "call", "subject": "Primeira ligação"}),
        "icp": lambda: (CRMICP, {"name": "Varejo", "slug": f"varejo-{uuid.uuid4().hex[:8]}", "content": "Perfil"}),
    }

    def build(entity_type: str, owner_id: str, **overrides: Any) -> Any:
        model, values = builders[entity_type]()
        row = model(**{**values, **overrides, "owner_id": owner_id})
        db_session.add(row)
        db_session.commit()
        return row

    return build


@pytest.fixture()
def create_payloads(stage: CRMStage) -> dict[str, dict[str, Any]]:
    return {
        "deal": {"title": "Contrato anual", "value": "1500.00", "stage_id": str(stage.id)},
        "contact": {"name": "Maria Souza", "email": "maria@example.com"},
        "lead": {"business_name": "Padaria Central", "quality": "warm"},
        "organization": {"name": "Acme Ltda", "website": "https://acme.example.com"},
        "partner": {"name": "Parceiro Sul", "partner_type": "reseller"},
        "activity": {"type": "call", "subject": "Primeira ligação"},
        "icp": {"name": "Varejo", "slug": "varejo", "content": "Perfil de cliente ideal"},
    }

