"""
API tests for the escalation endpoints.

Runs the full application (lifespan included) against a per-test SQLite
file. The scheduler is disabled; sweeps are triggered through the API.
"""

import pytest
from fastapi.testclient import TestClient

from elevare.config import settings
from elevare.main import app

RULE = {
    "name": "Maintenance SLA breach",
    "entity_type": "maintenance",
    "trigger_condition": "sla_breach",
    "escalate_to_role": "manager",
    "notify_channels": ["in_app"],
}

MANUAL = {
    "entity_type": "legal_case",
    "entity_id": "LC-2031",
    "escalated_to": "u-legal-head",
    "reason": "Hearing moved forward",
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setattr(settings, "escalation_sweep_interval_seconds", 0)
    with TestClient(app) as test_client:
        yield test_client


def create_rule(client, **overrides) -> dict:
    response = client.post("/escalations/rules", json={**RULE, **overrides})
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    def test_health_reports_components(self, client) -> None:
        response = client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == "connected"
        assert body["checks"]["escalation_config"] == "loaded"
        assert body["checks"]["scheduler"] == "stopped"
        assert body["checks"]["evaluator"] == "idle"

    def test_escalation_routes_registered(self, client) -> None:
        paths = {route.path for route in app.routes}

        assert {
            "/escalations/rules", "/escalations/rules/{rule_id}",
            "/escalations/events", "/escalations/events/{event_id}",
            "/escalations/dedup/clear", "/escalations/sweeps",
        } <= paths

    def test_correlation_id_echoed(self, client) -> None:
        response = client.get("/", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"


class TestRulesApi:
    """Rule CRUD over HTTP."""

    def test_create_and_fetch(self, client) -> None:
        created = create_rule(client, priority_filter=["high", "urgent"])

        fetched = client.get(f"/escalations/rules/{created['id']}").json()

        assert fetched["name"] == "Maintenance SLA breach"
        assert fetched["priority_filter"] == ["high", "urgent"]
        assert fetched["is_active"] is True

    def test_rule_name_alias_accepted(self, client) -> None:
        body = {**RULE}
        body["rule_name"] = body.pop("name")

        response = client.post("/escalations/rules", json=body)

        assert response.status_code == 201
        assert response.json()["name"] == "Maintenance SLA breach"

    def test_schema_violation_returns_field_errors(self, client) -> None:
        response = client.post("/escalations/rules", json={**RULE, "entity_type": "spaceship"})

        body = response.json()
        assert response.status_code == 422
        assert body["detail"] == "Request validation failed"
        assert body["errors"][0]["field"] == "entity_type"

    def test_domain_violation_returns_field_errors(self, client) -> None:
        """status_stale without a threshold passes the schema but not the rule."""
        response = client.post("/escalations/rules", json={**RULE, "trigger_condition": "status_stale"})

        body = response.json()
        assert response.status_code == 422
        assert body["errors"] == [
            {"field": "time_threshold_hours", "message": "status_stale rules require time_threshold_hours"}
        ]

    def test_missing_rule_is_404(self, client) -> None:
        response = client.get("/escalations/rules/3f1d2c4b-0000-4000-8000-000000000000")

        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_partial_update_and_disable(self, client) -> None:
        created = create_rule(client, description="original")

        response = client.put(
            f"/escalations/rules/{created['id']}",
            json={"time_threshold_hours": 4, "is_active": False}
        )

        updated = response.json()
        assert response.status_code == 200
        assert updated["time_threshold_hours"] == 4
        assert updated["is_active"] is False
        assert updated["description"] == "original"

        active = client.get("/escalations/rules", params={"is_active": True}).json()
        assert active == []

    def test_list_pagination(self, client) -> None:
        for index in range(3):
            create_rule(client, name=f"Rule {index}")

        first_page = client.get("/escalations/rules", params={"limit": 2, "page": 1}).json()
        second_page = client.get("/escalations/rules", params={"limit": 2, "page": 2}).json()

        assert len(first_page) == 2
        assert len(second_page) == 1

    def test_delete_unreferenced_rule(self, client) -> None:
        created = create_rule(client)

        response = client.delete(f"/escalations/rules/{created['id']}")

        assert response.status_code == 200
        assert client.get(f"/escalations/rules/{created['id']}").status_code == 404


class TestEventsApi:
    """Manual escalation, acknowledgment and dedup clearing."""

    def test_manual_escalation_created(self, client) -> None:
        response = client.post("/escalations/events", json=MANUAL)

        event = response.json()
        assert response.status_code == 201
        assert event["rule_id"] is None
        assert event["acknowledged"] is False
        assert event["escalated_to"] == "u-legal-head"

    def test_manual_escalations_not_deduplicated(self, client) -> None:
        first = client.post("/escalations/events", json=MANUAL).json()
        second = client.post("/escalations/events", json=MANUAL).json()

        listed = client.get("/escalations/events", params={"entity_id": "LC-2031"}).json()

        assert first["id"] != second["id"]
        assert len(listed) == 2

    def test_acknowledge_is_idempotent(self, client) -> None:
        event = client.post("/escalations/events", json=MANUAL).json()

        first = client.put(
            f"/escalations/events/{event['id']}",
            json={"acknowledged": True, "acknowledged_by": "u-1"}
        ).json()
        second = client.put(
            f"/escalations/events/{event['id']}",
            json={"acknowledged": True, "acknowledged_by": "u-2"}
        ).json()

        assert first["acknowledged"] is True
        assert second["acknowledged_by"] == "u-1"
        assert second["acknowledged_at"] == first["acknowledged_at"]

    def test_unacknowledge_rejected(self, client) -> None:
        event = client.post("/escalations/events", json=MANUAL).json()

        response = client.put(f"/escalations/events/{event['id']}", json={"acknowledged": False})

        assert response.status_code == 422

    def test_acknowledge_unknown_event_is_404(self, client) -> None:
        response = client.put("/escalations/events/nope", json={"acknowledged": True})

        assert response.status_code == 404

    def test_open_filter(self, client) -> None:
        event = client.post("/escalations/events", json=MANUAL).json()
        client.post("/escalations/events", json={**MANUAL, "entity_id": "LC-2032"})
        client.put(f"/escalations/events/{event['id']}", json={"acknowledged": True})

        open_events = client.get("/escalations/events", params={"acknowledged": False}).json()

        assert [e["entity_id"] for e in open_events] == ["LC-2032"]

    def test_dedup_clear_without_open_events(self, client) -> None:
        rule = create_rule(client)

        response = client.post(
            "/escalations/dedup/clear",
            json={"rule_id": rule["id"], "entity_id": "M-1", "cleared_by": "ops"}
        )

        assert response.status_code == 200
        assert response.json()["events_acknowledged"] == 0

    def test_delete_referenced_rule_is_409(self, client) -> None:
        rule = create_rule(client)
        emitter = app.state.emitter
        result = client.portal.call(
            emitter.emit, rule["id"], "maintenance", "M-1", "Leaking roof", "u-manager", "SLA breached"
        )
        assert result.created

        response = client.delete(f"/escalations/rules/{rule['id']}")

        assert response.status_code == 409
        assert response.json()["detail"].startswith("Escalation rule")


class TestSweepsApi:
    """Sweeps triggered on demand."""

    def test_manual_sweep_recorded(self, client) -> None:
        response = client.post("/escalations/sweeps")

        report = response.json()
        assert response.status_code == 200
        assert report["trigger"] == "manual"
        assert report["status"] == "completed"

        runs = client.get("/escalations/sweeps").json()
        assert [run["id"] for run in runs] == [report["id"]]
        assert client.get("/health").json()["checks"]["last_sweep"]["id"] == report["id"]

    def test_sweep_with_missing_domain_table(self, client) -> None:
        """A domain whose table does not exist is reported, not fatal."""
        create_rule(client)

        report = client.post("/escalations/sweeps").json()

        assert report["status"] == "completed_with_errors"
        assert report["failures"][0]["entity_type"] == "maintenance"
