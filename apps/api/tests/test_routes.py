"""Tests for the VERI*FACTU HTTP routes."""

import base64
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from verifactu_api.db.session import get_db
from verifactu_api.main import app
from verifactu_api.models import ComplianceMode, TransmissionEvent
from verifactu_api.routes.verifactu import get_registry_service, get_submission_worker

from conftest import CERT_PASSWORD, START


@pytest.fixture
def client(db, registry, worker):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry_service] = lambda: registry
    app.dependency_overrides[get_submission_worker] = lambda: worker
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def long_lived_container(make_container):
    return make_container(not_after=START + timedelta(days=3650))


@pytest.fixture
def tenant(make_tenant, registry, long_lived_container):
    config = make_tenant()
    registry.update_certificate(config.tenant_id, long_lived_container, CERT_PASSWORD)
    return config


def _payload(make_event, number=1):
    payload = make_event(number=number).model_dump(mode="json")
    payload.pop("tenant_id")
    return payload


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "verifactu-api"


def test_append_entry(client, tenant, make_event):
    response = client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event))

    assert response.status_code == 201
    data = response.json()
    assert data["sequence_number"] == 1
    assert data["previous_hash"] is None
    assert data["status"] == "pending"
    assert len(data["current_hash"]) == 64
    assert response.headers["x-correlation-id"]


def test_append_entry_validation(client, tenant, make_event):
    payload = _payload(make_event)
    del payload["totals"]
    assert client.post("/v1/verifactu/tenants/1/entries", json=payload).status_code == 422


def test_append_for_disabled_tenant(client, make_tenant, make_event):
    make_tenant(enabled=False)
    response = client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event))
    assert response.status_code == 409


def test_list_and_get_entries(client, tenant, make_event):
    for number in (1, 2, 3):
        client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event, number))

    listing = client.get("/v1/verifactu/tenants/1/entries", params={"page_size": 2}).json()
    assert listing["total"] == 3
    assert [entry["sequence_number"] for entry in listing["entries"]] == [3, 2]

    filtered = client.get("/v1/verifactu/tenants/1/entries", params={"status": "sent"}).json()
    assert filtered["total"] == 0
    assert client.get("/v1/verifactu/tenants/1/entries", params={"status": "bogus"}).status_code == 422

    entry_id = listing["entries"][0]["id"]
    detail = client.get(f"/v1/verifactu/tenants/1/entries/{entry_id}").json()
    assert detail["signed_xml"].startswith("<?xml")
    assert [event["event_type"] for event in detail["events"]] == ["created"]

    assert client.get(f"/v1/verifactu/tenants/2/entries/{entry_id}").status_code == 404


def test_retry_of_pending_entry_conflicts(client, tenant, make_event):
    entry = client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event)).json()
    response = client.post(f"/v1/verifactu/entries/{entry['id']}/retry")
    assert response.status_code == 409
    assert client.post("/v1/verifactu/entries/9999/retry").status_code == 404


def test_retry_of_error_entry(client, db, tenant, make_event, registry):
    entry = registry.append(make_event())
    entry.status = "error"
    db.commit()

    response = client.post(f"/v1/verifactu/entries/{entry.id}/retry", headers={"x-operator-id": "ana@crm"})

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    event = db.query(TransmissionEvent).filter(TransmissionEvent.event_type == "retry").one()
    assert event.actor == "ana@crm"


def test_activate(client, make_tenant, registry, long_lived_container, make_event):
    make_tenant(mode=ComplianceMode.REQUIREMENT)
    registry.update_certificate(1, long_lived_container, CERT_PASSWORD)
    entry = client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event)).json()
    assert entry["status"] == "dormant"

    response = client.post(f"/v1/verifactu/entries/{entry['id']}/activate")
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert client.post(f"/v1/verifactu/entries/{entry['id']}/activate").status_code == 409


def test_stats_and_chain(client, tenant, make_event):
    for number in (1, 2):
        client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event, number))

    stats = client.get("/v1/verifactu/tenants/1/stats").json()
    assert stats["counts"]["pending"] == 2
    assert stats["total"] == 2

    assert client.get("/v1/verifactu/tenants/1/chain/verify").json() == {
        "tenant_id": 1,
        "valid": True,
        "error": None,
    }


def test_config_lifecycle(client):
    assert client.get("/v1/verifactu/tenants/5/config").status_code == 404

    created = client.put("/v1/verifactu/tenants/5/config", json={"enabled": True, "tenant_name": "Cinco SL"})
    assert created.status_code == 200
    assert created.json()["version"] == 1
    assert created.json()["has_certificate"] is False

    invalid = client.put(
        "/v1/verifactu/tenants/5/config", json={"environment": "production", "flow_control_seconds": 5}
    )
    assert invalid.status_code == 422

    fetched = client.get("/v1/verifactu/tenants/5/config").json()
    assert fetched["environment"] == "testing"
    assert fetched["tenant_name"] == "Cinco SL"


def test_certificate_upload(client, make_tenant, make_event, registry, long_lived_container):
    make_tenant()
    registry.append(make_event())

    bad = client.post(
        "/v1/verifactu/tenants/1/certificate", json={"container_base64": "%%%", "password": CERT_PASSWORD}
    )
    assert bad.status_code == 422

    encoded = base64.b64encode(long_lived_container).decode()
    wrong = client.post("/v1/verifactu/tenants/1/certificate", json={"container_base64": encoded, "password": "nope"})
    assert wrong.status_code == 422

    response = client.post(
        "/v1/verifactu/tenants/1/certificate", json={"container_base64": encoded, "password": CERT_PASSWORD}
    )
    assert response.status_code == 200
    assert response.json()["resigned_entries"] == 1
    assert "Demo Facturacion SL" in response.json()["subject"]

    status = client.get("/v1/verifactu/tenants/1/certificate").json()
    assert status["level"] == "ok"
    assert "Demo Facturacion SL" in status["certificate"]["issuer"]

    monitor = client.get("/v1/verifactu/certificates/monitor").json()
    assert monitor["summary"]["ok"] == 1
    assert monitor["tenants"][0]["tenant_id"] == 1

    assert client.delete("/v1/verifactu/tenants/1/certificate").status_code == 204
    status = client.get("/v1/verifactu/tenants/1/certificate").json()
    assert status["level"] == "blocked"
    assert status["certificate"] is None


def test_certificate_status_for_unknown_tenant(client):
    assert client.get("/v1/verifactu/tenants/77/certificate").status_code == 404


def test_manual_worker_run(client, tenant, make_event, fake_gateway):
    client.post("/v1/verifactu/tenants/1/entries", json=_payload(make_event))

    response = client.post("/v1/verifactu/tenants/1/worker/run")

    assert response.status_code == 200
    assert response.json()["sent"] == 1
    assert len(fake_gateway.batches) == 1

    again = client.post("/v1/verifactu/tenants/1/worker/run").json()
    assert again["skipped"] == "throttled"
