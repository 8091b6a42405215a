from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.crm.service import deal_service
from app.logging import REDACTED, JsonLogFormatter, redact
from app.otel import setup_inmemory_otel
from app.platform.security import NotFoundError, Principal, Role, UnauthorizedError


ADMIN = Principal(user_id="admin-1", role=Role.ADMIN)
SDR = Principal(user_id="sdr-1", role=Role.SDR)


def _actions(entity: str, action: str, outcome: str) -> float:
    return (
        REGISTRY.get_sample_value("crm_actions_total", {"entity": entity, "action": action, "outcome": outcome})
        or 0.0
    )


def test_correlation_id_is_echoed_and_generated(client: TestClient) -> None:
    echoed = client.get("/health", headers={"X-Correlation-Id": "corr-abc"})
    generated = client.get("/health")
    oversized = client.get("/health", headers={"X-Correlation-Id": "x" * 200})

    assert echoed.headers["x-correlation-id"] == "corr-abc"
    assert echoed.headers["x-request-id"] == "corr-abc"
    assert generated.headers["x-correlation-id"]
    assert oversized.headers["x-correlation-id"] != "x" * 200


def test_error_envelope_carries_request_correlation_id(client: TestClient, actor: Any) -> None:
    actor.use(None)

    response = client.get("/api/crm/deals", headers={"X-Correlation-Id": "corr-401"})

    assert response.status_code == 401
    assert response.json()["correlation_id"] == "corr-401"


def test_audit_entries_carry_correlation_id(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"business_name": "Loja Sol"}, headers={"X-Correlation-Id": "corr-audit"})

    assert response.status_code == 201
    entry = audit.entries_for("crm.lead", response.json()["id"])[0]
    assert entry["correlation_id"] == "corr-audit"


def test_request_log_has_route_template_and_correlation_id(
    client: TestClient,
    make_record: Callable[..., Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    deal = make_record("deal", "sdr-1")

    response = client.get(f"/api/crm/deals/{deal.id}", headers={"X-Correlation-Id": "log-123"})
    assert response.status_code == 200

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert any(
        getattr(record, "correlation_id", None) == "log-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/deals/{id}"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_crm_action_logs_success_and_unauthorized(
    db_session: Session,
    make_record: Callable[..., Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    deal = make_record("deal", "sdr-1")

    deal_service.update(db_session, SDR, deal.id, {"title": "Contrato novo"})
    with pytest.raises(UnauthorizedError):
        deal_service.list(db_session, None)

    success = [record for record in caplog.records if record.name == "app.crm" and record.getMessage() == "crm.action"]
    assert any(
        getattr(record, "action", None) == "update"
        and getattr(record, "entity_type", None) == "deal"
        and getattr(record, "entity_id", None) == str(deal.id)
        and getattr(record, "user_id", None) == "sdr-1"
        and record.levelno == logging.INFO
        for record in success
    )
    warnings = [record for record in caplog.records if record.getMessage() == "crm.unauthorized"]
    assert warnings and warnings[0].levelno == logging.WARNING


def test_masked_denial_is_logged_at_debug(
    db_session: Session,
    make_record: Callable[..., Any],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.DEBUG, logger="app.security.rls")
    foreign = make_record("deal", "closer-1")

    with pytest.raises(NotFoundError):
        deal_service.delete(db_session, SDR, foreign.id)

    denials = [record for record in caplog.records if record.getMessage() == "owner_scope.denied"]
    assert len(denials) == 1
    assert denials[0].levelno == logging.DEBUG
    assert getattr(denials[0], "action", None) == "delete"


def test_redact_masks_sensitive_keys_recursively() -> None:
    payload = {
        "name": "Maria",
        "password": "hunter2",
        "nested": {"api_key": "abc", "items": [{"cpf": "123"}, {"city": "Recife"}]},
        "Authorization": "Bearer xyz",
    }

    assert redact(payload) == {
        "name": "Maria",
        "password": REDACTED,
        "nested": {"api_key": REDACTED, "items": [{"cpf": REDACTED}, {"city": "Recife"}]},
        "Authorization": REDACTED,
    }


def test_json_formatter_keeps_whitelisted_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm",
            "levelname": "INFO",
            "msg": "crm.action",
            "action": "create",
            "entity_type": "deal",
            "changes": {"title": "Novo", "token": "segredo"},
            "unrelated": "dropped",
            "correlation_id": "corr-json",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "crm.action"
    assert payload["correlation_id"] == "corr-json"
    assert payload["fields"] == {
        "action": "create",
        "entity_type": "deal",
        "changes": {"title": "Novo", "token": REDACTED},
    }


def test_crm_action_metrics_record_outcomes(db_session: Session, make_record: Callable[..., Any]) -> None:
    foreign = make_record("deal", "closer-1")
    success_before = _actions("deal", "list", "success")
    denied_before = _actions("deal", "update", "not_found")
    unauthorized_before = _actions("deal", "delete", "unauthorized")

    deal_service.list(db_session, SDR)
    with pytest.raises(NotFoundError):
        deal_service.update(db_session, SDR, foreign.id, {"title": "Outro"})
    with pytest.raises(UnauthorizedError):
        deal_service.delete(db_session, None, foreign.id)

    assert _actions("deal", "list", "success") == success_before + 1
    assert _actions("deal", "update", "not_found") == denied_before + 1
    assert _actions("deal", "delete", "unauthorized") == unauthorized_before + 1


def test_crm_action_spans_carry_entity_action_and_role(db_session: Session, make_record: Callable[..., Any]) -> None:
    exporter = setup_inmemory_otel()
    exporter.clear()
    deal = make_record("deal", "sdr-1")

    deal_service.get_by_id(db_session, ADMIN, deal.id)

    spans = [span for span in exporter.get_finished_spans() if span.name == "crm.deal.get"]
    assert spans
    attributes = spans[-1].attributes
    assert attributes["crm.entity"] == "deal"
    assert attributes["crm.action"] == "get"
    assert attributes["enduser.role"] == "admin"
    assert attributes["crm.entity_id"] == str(deal.id)


def test_metrics_endpoint_is_admin_only(client: TestClient, actor: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    assert client.get("/metrics").status_code == 404

    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 403

    actor.use(None)
    assert client.get("/metrics").status_code == 401

    actor.use(ADMIN)
    client.get("/api/crm/deals")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "crm_actions_total" in response.text
    assert 'path="/api/crm/deals"' in response.text
