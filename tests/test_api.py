import pytest
from conftest import days_ago, mark_pending, seed_record
from fastapi.testclient import TestClient

from sponsorcrm.api import create_app
from sponsorcrm.services import sponsors


@pytest.fixture
def client(ctx) -> TestClient:
    return TestClient(create_app(ctx))


def test_cron_requires_configured_secret(client, monkeypatch) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)

    response = client.get("/api/cron/contract-reminders", headers={"Authorization": "Bearer anything"})

    assert response.status_code == 500


def test_cron_rejects_wrong_secret(client, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", "s3cret")

    assert client.get("/api/cron/contract-reminders").status_code == 401
    wrong = client.get("/api/cron/contract-reminders", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Unauthorized"}


def test_cron_runs_sweep(ctx, client, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    seed = seed_record(ctx.store)
    mark_pending(ctx.store, seed.sfc_id, days_ago(6))

    response = client.get("/api/cron/contract-reminders", headers={"Authorization": "Bearer s3cret"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "total": 1, "sent": 1, "failed": 0}


def test_status_update_endpoint(ctx, client) -> None:
    seed = seed_record(ctx.store)

    response = client.patch(
        f"/api/sponsor-for-conference/{seed.sfc_id}/status",
        json={"axis": "status", "value": "negotiating", "author": "ola"},
    )

    assert response.status_code == 200
    assert response.json()["old_value"] == "prospect"
    assert sponsors.get_record(ctx.store, seed.sfc_id).status == "negotiating"


def test_status_update_errors(ctx, client) -> None:
    seed = seed_record(ctx.store)

    invalid = client.patch(
        f"/api/sponsor-for-conference/{seed.sfc_id}/status", json={"axis": "status", "value": "won"}
    )
    missing = client.patch("/api/sponsor-for-conference/missing/status", json={"axis": "status", "value": "contacted"})

    assert invalid.status_code == 400
    assert invalid.json()["field"] == "status"
    assert missing.status_code == 404


def test_delete_endpoints(ctx, client) -> None:
    first = seed_record(ctx.store, "Acme Bio")
    second = seed_record(ctx.store, "Globex")

    response = client.delete(f"/api/sponsor-for-conference/{first.sfc_id}?deleteContractAsset=true")
    sponsor_response = client.delete(f"/api/sponsors/{second.sponsor_id}")

    assert response.status_code == 200
    assert response.json()["deleted"]["sponsor_for_conference"] == 1
    assert sponsor_response.json()["deleted"]["sponsors"] == 1
    assert client.delete(f"/api/sponsors/{second.sponsor_id}").status_code == 404


def test_portal_signing_flow(ctx, client) -> None:
    seed = seed_record(ctx.store)
    sent = ctx.contracts.generate_contract(seed.sfc_id)

    portal = client.get(f"/api/signing/{sent.agreement_id}")
    completed = client.post(f"/api/signing/{sent.agreement_id}/complete", json={"signer_name": "Ada Lovelace"})

    assert portal.status_code == 200
    assert portal.json()["sponsor_name"] == "Acme Bio"
    assert completed.json() == {"success": True, "sfc_id": seed.sfc_id, "signature_status": "signed"}
    assert client.get("/api/signing/unknown-token").status_code == 404
    again = client.post(f"/api/signing/{sent.agreement_id}/complete", json={"signer_name": "Ada Lovelace"})
    assert again.status_code == 200


def test_webhook_echoes_client_id(client, monkeypatch) -> None:
    monkeypatch.setenv("ESIGN_WEBHOOK_CLIENT_ID", "client-123")

    ok = client.get("/api/webhooks/signing", headers={"X-AdobeSign-ClientId": "client-123"})
    rejected = client.post("/api/webhooks/signing", headers={"X-AdobeSign-ClientId": "other"}, json={})
    bad_json = client.post(
        "/api/webhooks/signing", headers={"X-AdobeSign-ClientId": "client-123"}, content=b"{not json"
    )

    assert ok.json() == {"xAdobeSignClientId": "client-123"}
    assert ok.headers["X-AdobeSign-ClientId"] == "client-123"
    assert rejected.status_code == 401
    assert bad_json.status_code == 400
