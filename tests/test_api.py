"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from mission_kernel.api.app import create_app
from mission_kernel.errors import ExternalNotifyFailure
from mission_kernel.storage.store import KernelStore, StoreTransaction
from mission_kernel.tracker.notifier import TrackerNotifier


class RecordingNotifier(TrackerNotifier):
    def __init__(self):
        self.updates = []

    def notify(self, update):
        self.updates.append(update)


class FailingNotifier(TrackerNotifier):
    def notify(self, update):
        raise ExternalNotifyFailure("Tracker rejected every update shape: HTTP 400")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(notifier):
    """Create a test client with fresh components."""
    app = create_app(store=KernelStore(":memory:"), notifier=notifier, webhook_secret="")
    return TestClient(app)


def _create(client, external_id="T1", owner="Alex", **extra):
    body = {"externalId": external_id, "name": "Fix login", "ownerHint": owner}
    body.update(extra)
    response = client.post("/events/tracker", json=body)
    assert response.status_code == 200
    return response.json()


class TestEventEndpoints:
    def test_tracker_webhook_creates_entity(self, client):
        data = _create(client, priority="High")
        assert data["ok"] is True
        assert data["outcome"] == "applied"
        assert data["entity"]["owner_id"] == "alex"
        assert data["entity"]["position"] == {"x": 7480.0, "y": 2900.0}

    def test_tracker_webhook_duplicate(self, client):
        first = _create(client)
        again = _create(client)
        assert again["outcome"] == "already_processed"
        assert again["entity_id"] == first["entity_id"]
        assert len(client.get("/entities").json()) == 1

    def test_tracker_webhook_rejects_missing_name(self, client):
        response = client.post("/events/tracker", json={"externalId": "T1"})
        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert body["error_code"] == "validation_error"
        assert "timestamp" in body

    def test_tagged_events(self, client):
        created = client.post("/events", json={
            "type": "create", "externalId": "T1", "name": "Fix", "ownerHint": "alex",
        }).json()
        response = client.post("/events", json={"type": "complete", "entityId": created["entity_id"]})
        assert response.status_code == 200
        assert response.json()["entity"]["completed"] is True

    def test_unknown_event_type(self, client):
        response = client.post("/events", json={"type": "explode"})
        assert response.status_code == 400

    def test_missing_body(self, client):
        assert client.post("/events").status_code == 400


class TestWebhookSecret:
    def test_secret_required_when_configured(self):
        client = TestClient(create_app(store=KernelStore(":memory:"), webhook_secret="s3cret"))
        body = {"externalId": "T1", "name": "Fix login"}
        assert client.post("/events/tracker", json=body).status_code == 401
        response = client.post(
            "/events/tracker", json=body, headers={"x-tracker-secret": "s3cret"}
        )
        assert response.status_code == 200


class TestEntityEndpoints:
    def test_get_and_list(self, client):
        created = _create(client)
        _create(client, "T2", owner="milya")
        entity_id = created["entity_id"]
        assert client.get(f"/entities/{entity_id}").json()["external_id"] == "T1"
        assert len(client.get("/entities").json()) == 2
        assert [e["external_id"] for e in client.get("/entities?owner=Milya").json()] == ["T2"]

    def test_get_missing(self, client):
        response = client.get("/entities/ent_missing")
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_reassign(self, client, notifier):
        entity_id = _create(client)["entity_id"]
        response = client.post(f"/entities/{entity_id}/reassign", json={"new_owner": "milya"})
        assert response.status_code == 200
        data = response.json()
        assert data["previous_owner"] == "alex"
        assert data["entity"]["position"] == {"x": 3280.0, "y": 2900.0}
        assert notifier.updates[-1].owner_id == "milya"

    def test_reassign_requires_body(self, client):
        entity_id = _create(client)["entity_id"]
        assert client.post(f"/entities/{entity_id}/reassign", json={}).status_code == 400

    def test_complete_and_recomplete(self, client):
        entity_id = _create(client, priority="Critical")["entity_id"]
        first = client.post(f"/entities/{entity_id}/complete").json()
        again = client.post(f"/entities/{entity_id}/complete").json()
        assert first["credit"]["balance"]["total_points"] == 120
        assert again["outcome"] == "already_processed"
        assert client.get("/teams/default/balance").json()["total_points"] == 120

    def test_complete_unassigned_conflicts(self, client):
        entity_id = _create(client, owner=None)["entity_id"]
        response = client.post(f"/entities/{entity_id}/complete")
        assert response.status_code == 409
        assert response.json()["error_code"] == "conflict"

    def test_patch_fields(self, client):
        entity_id = _create(client)["entity_id"]
        response = client.patch(f"/entities/{entity_id}", json={"description": "SSO only"})
        assert response.status_code == 200
        assert response.json()["entity"]["description"] == "SSO only"

    def test_patch_rejects_owner(self, client):
        entity_id = _create(client)["entity_id"]
        response = client.patch(f"/entities/{entity_id}", json={"owner_id": "milya"})
        assert response.status_code == 400

    def test_mark_seen(self, client):
        entity_id = _create(client)["entity_id"]
        data = client.post(f"/entities/{entity_id}/seen", json={"viewer": "alex"}).json()
        assert data["entity"]["seen_by"] == {"alex": True}

    def test_delete_and_destroy(self, client):
        open_id = _create(client)["entity_id"]
        done_id = _create(client, "T2")["entity_id"]
        client.post(f"/entities/{done_id}/complete")

        assert client.delete(f"/entities/{open_id}").json()["deleted"] is True
        assert client.delete(f"/entities/{done_id}").status_code == 409
        destroyed = client.delete(f"/entities/{done_id}?privileged=true")
        assert destroyed.json()["transition"] == "destroy"
        assert client.get("/entities").json() == []
        assert client.get("/teams/default/balance").json()["total_points"] == 30

    def test_notify_failure_is_partial_success(self):
        client = TestClient(
            create_app(store=KernelStore(":memory:"), notifier=FailingNotifier(), webhook_secret="")
        )
        entity_id = _create(client)["entity_id"]
        response = client.post(f"/entities/{entity_id}/complete")
        assert response.status_code == 200
        assert response.json()["warning"]
        assert response.json()["entity"]["completed"] is True

    def test_storage_failure_is_retryable_503(self, client, monkeypatch):
        entity_id = _create(client)["entity_id"]
        monkeypatch.setattr(
            StoreTransaction, "update_entity", lambda tx, entity, expected_revision: False
        )
        response = client.post(f"/entities/{entity_id}/complete")
        assert response.status_code == 503
        body = response.json()
        assert body["ok"] is False
        assert body["error_code"] == "storage_error"
        assert body["context"] == {"entity_id": entity_id, "retryable": True}

        monkeypatch.undo()
        assert client.get(f"/entities/{entity_id}").json()["completed"] is False
        assert client.get("/teams/default/balance").json()["total_points"] == 0


class TestLedgerEndpoints:
    def test_award_is_idempotent(self, client):
        body = {"source_id": "bonus-1", "payee_id": "Alex", "label": "Bonus", "points": 25}
        first = client.post("/points/award", json=body).json()
        again = client.post("/points/award", json=body).json()
        assert first["outcome"] == "applied"
        assert again["outcome"] == "already_credited"
        assert client.get("/teams/default/balance").json()["total_points"] == 25

    def test_award_rejects_negative(self, client):
        body = {"source_id": "bonus-1", "label": "Bonus", "points": -5}
        assert client.post("/points/award", json=body).status_code == 400

    def test_adjust_and_audit(self, client):
        client.post("/points/award", json={"source_id": "s1", "label": "x", "points": 40})
        client.post("/points/adjust", json={"label": "Correction", "points": -15})
        assert client.get("/teams/default/balance").json()["total_points"] == 25
        assert len(client.get("/teams/default/transactions").json()) == 2
        audit = client.get("/teams/default/audit").json()
        assert audit["consistent"] is True
        assert audit["transaction_sum"] == 25


class TestMiscEndpoints:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"

    def test_zones(self, client):
        data = client.get("/zones").json()
        assert data["zones"]["alex"] == {"x": 7100.0, "y": 2900.0}

    def test_snapshot(self, client):
        _create(client)
        assert [e["external_id"] for e in client.get("/snapshot").json()] == ["T1"]


class TestRealtimeWebsocket:
    def test_snapshot_then_deltas(self, client):
        _create(client)
        with client.websocket_connect("/realtime") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert [e["external_id"] for e in snapshot["entities"]] == ["T1"]

            created = _create(client, "T2", owner="milya")
            delta = ws.receive_json()
            assert delta["type"] == "delta"
            assert delta["entity_id"] == created["entity_id"]
            assert delta["revision"] == 1

            client.post(f"/entities/{created['entity_id']}/complete")
            delta = ws.receive_json()
            assert delta["changed_fields"] == {"completed": True}
            assert delta["revision"] == 2
