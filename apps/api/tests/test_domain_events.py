from __future__ import annotations

import logging
from typing import Any

import pytest
from fastapi.testclient import TestClient

from app import events
from app.context import reset_correlation_id, set_correlation_id
from app.core.events import DomainEvent, InProcessEventBus


def test_event_bus_delivers_to_current_subscribers_only() -> None:
    bus = InProcessEventBus()
    received: list[DomainEvent] = []
    bus.subscribe("crm.deal.created", received.append)

    bus.publish("crm.deal.created", {"deal_id": "1"})
    bus.publish("crm.deal.deleted", {"deal_id": "1"})
    bus.unsubscribe("crm.deal.created", received.append)
    bus.publish("crm.deal.created", {"deal_id": "2"})

    assert [event.payload["deal_id"] for event in received] == ["1"]


def test_publish_fills_correlation_id_from_context() -> None:
    token = set_correlation_id("evt-corr")
    try:
        events.publish({"event_type": "crm.contact.created", "payload": {}})
    finally:
        reset_correlation_id(token)

    assert events.published_events[-1]["correlation_id"] == "evt-corr"


def test_lead_conversion_is_logged_as_milestone(
    client: TestClient,
    make_record: Any,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = make_record("lead", "sdr-1")
    client.post(f"/api/crm/leads/{lead.id}/contacts", json={"name": "Otávio"})

    response = client.post(f"/api/crm/leads/{lead.id}/convert")

    assert response.status_code == 200
    milestones = [record for record in caplog.records if record.getMessage() == "crm.milestone"]
    assert any(
        getattr(record, "action", None) == "crm.lead.converted" and getattr(record, "entity_id", None) == str(lead.id)
        for record in milestones
    )
